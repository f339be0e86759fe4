"""Audit context: who did it, within which operation, from where.

The context is passed explicitly to every write instead of living in
thread-local state, so concurrent tasks each carry their own. Values are
resolved in order: already set on the record, the explicit AuditContext,
then the injected pull-based accessors. A missing actor or origin stays
unset; a missing correlation id gets a fresh uuid4.
"""
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Optional

from auditvault.shared.models import AuditRecord
from auditvault.shared.models.record import Actor


def _unavailable() -> None:
    return None


def new_correlation_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class AuditContext:
    """Values shared by every record written during one logical operation."""
    actor: Optional[Actor] = None
    correlation_id: Optional[str] = None
    origin_address: Optional[str] = None

    def as_user(self, actor: Actor) -> "AuditContext":
        """Same context, attributed to another actor."""
        return replace(self, actor=actor)


@dataclass(frozen=True)
class ContextAccessors:
    """Pull-based accessors supplied by the host application.

    e.g. the web layer's current user, request id and remote address.
    """
    current_actor: Callable[[], Optional[Actor]] = _unavailable
    current_correlation_id: Callable[[], Optional[str]] = _unavailable
    current_origin_address: Callable[[], Optional[str]] = _unavailable


def resolve_context(
    record: AuditRecord,
    context: Optional[AuditContext] = None,
    accessors: Optional[ContextAccessors] = None,
) -> AuditRecord:
    """Fill actor, correlation id and origin address on a record being written."""
    context = context or AuditContext()
    accessors = accessors or ContextAccessors()

    if record.actor is None:
        record.set_actor(context.actor or accessors.current_actor())

    if record.correlation_id is None:
        record.correlation_id = (
            context.correlation_id
            or accessors.current_correlation_id()
            or new_correlation_id()
        )

    if record.origin_address is None:
        record.origin_address = context.origin_address or accessors.current_origin_address()

    return record
