"""Approval gate coordinating human decisions for gated steps."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .contracts import (
    ApprovalRequest,
    ApprovalStatus,
    AuthContext,
    Decision,
    utcnow,
)
from .errors import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    ApprovalTimeoutError,
    DuplicateApprovalError,
)

logger = logging.getLogger(__name__)

ArgumentsValidator = Callable[[ApprovalRequest, Dict[str, Any]], Any]


class _Entry:
    __slots__ = ("request", "lock", "decided")

    def __init__(self, request: ApprovalRequest) -> None:
        self.request = request
        self.lock = asyncio.Lock()
        self.decided = asyncio.Event()


def new_approval_id() -> str:
    return f"approval_{uuid.uuid4().hex}"


class ApprovalGate:
    """Registry of approval requests with a blocking wait for decisions.

    ``decide`` signals the waiting run directly through an event, so the
    wake-up latency is bounded by the scheduler rather than a poll interval.
    Each entry carries its own lock; ``decide`` and ``await_decision`` on the
    same id are serialized through it.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._pending_index: Dict[Tuple[str, str], str] = {}

    def _entry(self, approval_id: str) -> _Entry:
        entry = self._entries.get(approval_id)
        if entry is None:
            raise ApprovalNotFoundError(approval_id)
        return entry

    async def register(
        self,
        run_id: str,
        step_name: str,
        arguments: Dict[str, Any],
        auth_context: Optional[AuthContext] = None,
    ) -> str:
        """Create a pending request and return its id."""
        key = (run_id, step_name)
        existing = self._pending_index.get(key)
        if existing is not None and self._entries[existing].request.is_pending:
            raise DuplicateApprovalError(
                f"Run {run_id} already has pending approval {existing} for step {step_name}"
            )

        approval_id = new_approval_id()
        request = ApprovalRequest(
            id=approval_id,
            run_id=run_id,
            step_name=step_name,
            arguments=dict(arguments),
            auth_context=auth_context,
        )
        self._entries[approval_id] = _Entry(request)
        self._pending_index[key] = approval_id
        logger.info(
            f"Approval pending approval_id={approval_id} run_id={run_id} step={step_name}"
        )
        return approval_id

    async def decide(
        self,
        approval_id: str,
        approved: bool,
        extra_arguments: Optional[Dict[str, Any]] = None,
        validate: Optional[ArgumentsValidator] = None,
    ) -> ApprovalRequest:
        """Apply a decision to a pending request.

        ``extra_arguments`` are merged into the stored arguments only when the
        request is approved; a rejection never accepts parameter overrides.
        ``validate`` is called with the request and the merged arguments
        before anything changes. If it raises, the error propagates and the
        request stays pending.

        Raises:
            ApprovalNotFoundError: If ``approval_id`` is unknown.
            ApprovalAlreadyDecidedError: If the request is no longer pending.
        """
        entry = self._entry(approval_id)
        async with entry.lock:
            request = entry.request
            if not request.is_pending:
                raise ApprovalAlreadyDecidedError(approval_id, request.status.value)

            if approved and extra_arguments:
                merged = {**request.arguments, **extra_arguments}
                if validate is not None:
                    validate(request, merged)
                request.arguments = merged
            request.status = (
                ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
            )
            request.decided_at = utcnow()
            self._pending_index.pop((request.run_id, request.step_name), None)
            entry.decided.set()

        logger.info(f"Approval {request.status.value} approval_id={approval_id}")
        return request.model_copy(deep=True)

    async def await_decision(
        self, approval_id: str, timeout: Optional[float] = None
    ) -> Decision:
        """Suspend until ``approval_id`` is decided.

        Raises:
            ApprovalNotFoundError: If ``approval_id`` is unknown.
            ApprovalTimeoutError: If ``timeout`` seconds pass without a
                decision. The request stays pending.
        """
        entry = self._entry(approval_id)
        try:
            await asyncio.wait_for(entry.decided.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ApprovalTimeoutError(approval_id, timeout or 0) from None

        async with entry.lock:
            request = entry.request
            return Decision(
                approval_id=approval_id,
                status=request.status,
                arguments=dict(request.arguments),
            )

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        entry = self._entries.get(approval_id)
        return entry.request.model_copy(deep=True) if entry else None

    def list_pending(self) -> List[ApprovalRequest]:
        return [
            entry.request.model_copy(deep=True)
            for entry in self._entries.values()
            if entry.request.is_pending
        ]

    def discard(self, approval_id: str) -> None:
        """Forget a request, such as one left pending by an aborted run."""
        entry = self._entries.pop(approval_id, None)
        if entry is None:
            return
        request = entry.request
        if self._pending_index.get((request.run_id, request.step_name)) == approval_id:
            del self._pending_index[(request.run_id, request.step_name)]
        logger.debug(f"Approval cleared approval_id={approval_id}")

    def sweep(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Remove decided requests older than ``max_age``.

        Pending requests are kept whatever their age, since a run may still
        be waiting on them.
        """
        cutoff = (now or utcnow()) - max_age
        stale = [
            approval_id
            for approval_id, entry in self._entries.items()
            if not entry.request.is_pending and entry.request.created_at < cutoff
        ]
        for approval_id in stale:
            self.discard(approval_id)
        logger.info(f"Removed {len(stale)} stale approval requests")
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)
