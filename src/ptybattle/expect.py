from __future__ import annotations

import asyncio
import inspect
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

from .buffer import OutputBuffer

EXPECT_POLL_INTERVAL = 0.05
CHANGE_POLL_INTERVAL = 0.01


@dataclass(slots=True)
class OutputCondition:
    contains: str | None = None
    regex: str | re.Pattern[str] | None = None
    predicate: Callable[[str], bool] | None = None

    def __post_init__(self) -> None:
        if self.contains is None and self.regex is None and self.predicate is None:
            msg = "At least one condition must be provided"
            raise ValueError(msg)
        if isinstance(self.regex, str):
            self.regex = re.compile(self.regex)

    @classmethod
    def coerce(cls, pattern: str | re.Pattern[str] | OutputCondition) -> OutputCondition:
        if isinstance(pattern, OutputCondition):
            return pattern
        if isinstance(pattern, re.Pattern):
            return cls(regex=pattern)
        return cls(contains=pattern)

    def matches(self, text: str) -> bool:
        if self.contains is not None and self.contains in text:
            return True
        if self.regex is not None and self.regex.search(text):
            return True
        if self.predicate is not None and self.predicate(text):
            return True
        return False

    def describe(self) -> str:
        """Human readable pattern used in events and error messages."""
        if self.contains is not None:
            return self.contains
        if self.regex is not None:
            pattern = self.regex.pattern if isinstance(self.regex, re.Pattern) else self.regex
            return f"/{pattern}/"
        return getattr(self.predicate, "__name__", "<predicate>")

    def __repr__(self) -> str:  # pragma: no cover - trivial
        parts: list[str] = []
        if self.contains is not None:
            parts.append(f"contains={self.contains!r}")
        if self.regex is not None:
            parts.append(f"regex={self.describe()!r}")
        if self.predicate is not None:
            parts.append(f"predicate={self.predicate!r}")
        return f"OutputCondition({', '.join(parts)})"


async def poll_until(
    probe: Callable[[], bool],
    timeout: float,
    interval: float,
) -> bool:
    """Evaluate ``probe`` every ``interval`` seconds until it holds or time runs out.

    The probe is always evaluated at least once, and once more right at the
    deadline, so a zero timeout still inspects the current state.
    """

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(timeout, 0.0)
    while True:
        if probe():
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))


class ExpectEngine:
    """Matching over the captured output of one session.

    Pattern expectations run on ANSI-stripped text so colour codes never
    split a match. Change detection compares the raw text so that pure
    styling updates count as a visible change.
    """

    def __init__(
        self,
        buffer: OutputBuffer,
        *,
        interval: float = EXPECT_POLL_INTERVAL,
        change_interval: float = CHANGE_POLL_INTERVAL,
    ) -> None:
        self._buffer = buffer
        self._interval = interval
        self._change_interval = change_interval

    async def wait_for(self, condition: OutputCondition, timeout: float) -> bool:
        return await poll_until(
            lambda: condition.matches(self._buffer.clean_text()),
            timeout,
            self._interval,
        )

    async def wait_for_change(
        self,
        timeout: float,
        *,
        baseline: str | None = None,
        interval: float | None = None,
    ) -> bool:
        initial = self._buffer.to_string() if baseline is None else baseline

        def changed() -> bool:
            current = self._buffer.to_string()
            return len(current) != len(initial) or current != initial

        return await poll_until(changed, timeout, interval or self._change_interval)

    async def detect_response(
        self,
        action: Callable[[], Awaitable[None] | None],
        timeout: float,
        *,
        interval: float | None = None,
    ) -> bool:
        """Run ``action`` and report whether the output changed afterwards."""
        baseline = self._buffer.to_string()
        outcome = action()
        if inspect.isawaitable(outcome):
            await outcome
        return await self.wait_for_change(timeout, baseline=baseline, interval=interval)
