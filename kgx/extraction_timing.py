from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

from kgx.extraction_config import TimingSettings

_MAX_WAIT_MS = 10_000


@dataclass(frozen=True)
class RandomWaitSettings:
    enabled: bool = True
    min_ms: int = 220
    max_ms: int = 900
    keystroke_min_ms: int = 40
    keystroke_max_ms: int = 140
    think_min_ms: int = 600
    think_max_ms: int = 1_800

    @classmethod
    def from_timing(cls, timing: TimingSettings) -> RandomWaitSettings:
        return cls(
            enabled=timing.random_waits,
            min_ms=_clamp(timing.min_wait_ms),
            max_ms=_clamp(timing.max_wait_ms),
            keystroke_min_ms=_clamp(timing.keystroke_min_ms),
            keystroke_max_ms=_clamp(timing.keystroke_max_ms),
            think_min_ms=_clamp(timing.think_min_ms),
            think_max_ms=_clamp(timing.think_max_ms),
        )


DISABLED_WAITS = RandomWaitSettings(enabled=False)


def _clamp(value: int) -> int:
    return max(0, min(value, _MAX_WAIT_MS))


def _draw(lower: int, upper: int, rng: random.Random | None) -> int:
    if upper < lower:
        upper = lower
    generator = rng or random
    return generator.randint(lower, upper)


async def wait_random_delay(
    page: Any,
    settings: RandomWaitSettings,
    *,
    minimum_ms: int | None = None,
    maximum_ms: int | None = None,
    rng: random.Random | None = None,
) -> int:
    if not settings.enabled:
        return 0

    lower = settings.min_ms if minimum_ms is None else _clamp(minimum_ms)
    upper = settings.max_ms if maximum_ms is None else _clamp(maximum_ms)
    wait_ms = _draw(lower, upper, rng)
    if wait_ms > 0:
        await page.wait_for_timeout(wait_ms)
    return wait_ms


async def think_pause(page: Any, settings: RandomWaitSettings, *, rng: random.Random | None = None) -> int:
    return await wait_random_delay(
        page,
        settings,
        minimum_ms=settings.think_min_ms,
        maximum_ms=settings.think_max_ms,
        rng=rng,
    )


async def type_like_human(
    page: Any,
    selector: str,
    text: str,
    settings: RandomWaitSettings,
    *,
    rng: random.Random | None = None,
) -> int:
    """Type ``text`` into ``selector`` one key at a time; returns the total delay spent in ms."""
    locator = page.locator(selector).first
    await locator.click()
    await think_pause(page, settings, rng=rng)
    if not settings.enabled:
        await locator.fill(text)
        return 0

    total = 0
    for character in text:
        delay = _draw(settings.keystroke_min_ms, settings.keystroke_max_ms, rng)
        await page.keyboard.type(character, delay=delay)
        total += delay
    return total
