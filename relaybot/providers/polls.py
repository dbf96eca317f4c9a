"""Poll input normalization shared by poll-capable providers."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_POLL_MAX_OPTIONS = 12
DISCORD_POLL_MAX_OPTIONS = 10


@dataclass
class PollInput:
    question: str
    options: list[str] = field(default_factory=list)
    max_selections: int | None = None
    duration_hours: float | None = None


def max_poll_options(provider: str) -> int:
    return DISCORD_POLL_MAX_OPTIONS if provider == "discord" else DEFAULT_POLL_MAX_OPTIONS


def normalize_poll_input(poll: PollInput, max_options: int | None = None) -> PollInput:
    """
    Trim the question and options and validate selection limits.

    Raises ValueError with a user-facing message when the poll is not sendable.
    """
    question = (poll.question or "").strip()
    if not question:
        raise ValueError("Poll question is required")

    options = [opt.strip() for opt in poll.options or [] if isinstance(opt, str) and opt.strip()]
    if len(options) < 2:
        raise ValueError("Poll requires at least 2 options")
    if max_options is not None and len(options) > max_options:
        raise ValueError(f"Poll supports at most {max_options} options")

    max_selections = 1 if poll.max_selections is None else int(poll.max_selections)
    if max_selections < 1:
        raise ValueError("maxSelections must be at least 1")
    if max_selections > len(options):
        raise ValueError("maxSelections cannot exceed option count")

    duration_hours = poll.duration_hours
    if duration_hours is not None and duration_hours < 1:
        raise ValueError("durationHours must be at least 1")

    return PollInput(
        question=question,
        options=options,
        max_selections=max_selections,
        duration_hours=duration_hours,
    )
