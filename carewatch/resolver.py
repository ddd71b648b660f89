"""
Recipient Resolver -- Who Gets Told About a Resident.

Turns a resident id into the ordered list of people eligible for an
incident alert.  Family and staff flow through the same list so that the
fan-out path downstream is identical for both; the recipient ``kind`` is
carried on each entry for the ledger.

**Ordering:**

1. The primary family contact.
2. Remaining family contacts, oldest relationship (``linked_at``) first.
3. Organisation staff by role priority (facility director, care manager,
   nurse, other), then ``linked_at``.

**Exclusions:** recipients who have withdrawn consent, and staff who are
no longer active.

An empty list is a valid answer.  Deciding what an unreachable resident
means is the orchestrator's job, not the resolver's.
"""

from __future__ import annotations

import structlog

from carewatch.errors import RecipientResolutionError
from carewatch.models import (
    STAFF_ROLE_PRIORITY,
    FamilyContact,
    OrganizationStaff,
    Recipient,
    RecipientKind,
    StaffRole,
)
from carewatch.store import RecipientRepository

logger = structlog.get_logger(__name__)


class RecipientResolver:
    def __init__(self, repository: RecipientRepository) -> None:
        self._repository = repository

    async def resolve(self, resident_id: str) -> list[Recipient]:
        """Return the eligible recipients for ``resident_id`` in notification order.

        Raises:
            RecipientResolutionError: If the repository is unavailable.
                Any other repository exception is wrapped in one, so the
                caller has a single failure type to retry on.
        """
        try:
            linked = await self._repository.list_recipients(resident_id)
        except RecipientResolutionError:
            raise
        except Exception as exc:
            raise RecipientResolutionError(
                f"Could not load recipients for resident '{resident_id}'",
                details={"resident_id": resident_id, "error_type": type(exc).__name__},
            ) from exc

        eligible = [r for r in linked if _is_eligible(r)]
        ordered = sorted(eligible, key=_sort_key)

        logger.debug(
            "recipients_resolved",
            linked=len(linked),
            eligible=len(ordered),
        )
        return ordered


def _is_eligible(recipient: Recipient) -> bool:
    if not recipient.consent_granted:
        return False
    if isinstance(recipient, OrganizationStaff) and not recipient.is_active:
        return False
    return True


def _sort_key(recipient: Recipient) -> tuple:
    if isinstance(recipient, FamilyContact):
        tier = 0 if recipient.is_primary_contact else 1
        return (tier, 0, recipient.linked_at)
    if isinstance(recipient, OrganizationStaff):
        return (2, STAFF_ROLE_PRIORITY[recipient.role], recipient.linked_at)
    # Plain Recipient rows have no primary flag or role.
    if recipient.kind is RecipientKind.FAMILY:
        return (1, 0, recipient.linked_at)
    return (2, STAFF_ROLE_PRIORITY[StaffRole.OTHER], recipient.linked_at)
