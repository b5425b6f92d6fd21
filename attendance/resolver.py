from __future__ import annotations

from attendance.models import ParticipantEvent, ResolvedParticipant

GUEST_KEY_PREFIX = "__nomail__"


def normalize_email(email: str | None) -> str | None:
    """Lower-case and trim; blank strings count as no email."""
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def identity_key_for(event: ParticipantEvent) -> str:
    email = normalize_email(event.email)
    if email is not None:
        return email
    # Guests never merge with anyone, not even other guests.
    return f"{GUEST_KEY_PREFIX}{event.connection_id}"


def resolve_participants(events: list[ParticipantEvent]) -> list[ResolvedParticipant]:
    """Group raw connection events into one record per identity.

    Output order follows the first appearance of each identity in the input,
    and every participant's segments are sorted by join time.
    """
    by_key: dict[str, ResolvedParticipant] = {}

    for event in events:
        key = identity_key_for(event)
        participant = by_key.get(key)
        if participant is None:
            participant = ResolvedParticipant(
                identity_key=key,
                email=normalize_email(event.email),
                display_name=event.name or "",
            )
            by_key[key] = participant
        participant.segments.append(event)

    for participant in by_key.values():
        participant.segments.sort(key=lambda e: (e.join_time, e.leave_time))

    return list(by_key.values())
