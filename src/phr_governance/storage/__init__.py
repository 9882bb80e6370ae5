"""Persistence collaborators: abstract backends and in-memory implementations"""
