"""Collaborator contracts invoked by the document state machine.

The state machine never talks to the PDF renderer or to webhook endpoints
directly; it calls these hooks after committing a transition. The API layer
plugs in background-task variants, tests plug in recorders.
"""
from __future__ import annotations

from typing import Protocol
from uuid import UUID


class CompletionHandler(Protocol):
    def __call__(self, document_id: UUID) -> None:
        """All signatures were collected for ``document_id``."""


class CallbackDispatcher(Protocol):
    def __call__(self, document_id: UUID, event: str) -> None:
        """Deliver ``event`` to the document's callback_url, if any."""


def run_completion(document_id: UUID) -> None:
    from esign.services.post_signature import complete_document

    complete_document(document_id)


def run_callback(document_id: UUID, event: str) -> None:
    from esign.services.webhook import deliver_document_callback

    deliver_document_callback(document_id, event)
