"""Requester identity directory - history lookups for risk assessment"""
from abc import ABC, abstractmethod
from typing import Iterable

from phr_governance.consent.models import (
    ConsentPurpose, ConsentStatus, RequesterHistory
)
from phr_governance.consent.store import ConsentStore


class RequesterDirectory(ABC):
    """Maps a requester id to what the patient has seen from them before."""

    @abstractmethod
    def get_history(self, requester_id: str, exclude_id: str | None = None) -> RequesterHistory:
        """
        History for a requester.

        ``exclude_id`` omits the request currently being assessed so it
        does not count towards its own history.
        """


class InMemoryRequesterDirectory(RequesterDirectory):
    """Fixture-backed directory. Unknown requesters have an empty history."""

    def __init__(self, histories: Iterable[RequesterHistory] = ()):
        self._histories = {h.requester_id: h for h in histories}

    def add(self, history: RequesterHistory) -> None:
        self._histories[history.requester_id] = history

    def get_history(self, requester_id: str, exclude_id: str | None = None) -> RequesterHistory:
        return self._histories.get(requester_id, RequesterHistory(requester_id=requester_id))


class ConsentHistoryDirectory(RequesterDirectory):
    """Derives requester history from the consent store itself."""

    def __init__(self, store: ConsentStore):
        self._store = store

    def get_history(self, requester_id: str, exclude_id: str | None = None) -> RequesterHistory:
        requests = [
            r for r in self._store.list_by_requester(requester_id) if r.id != exclude_id
        ]
        purposes: list[ConsentPurpose] = []
        for request in requests:
            if request.purpose not in purposes:
                purposes.append(request.purpose)
        return RequesterHistory(
            requester_id=requester_id,
            past_request_count=len(requests),
            past_revocations=sum(1 for r in requests if r.status == ConsentStatus.REVOKED),
            purposes=purposes,
        )
