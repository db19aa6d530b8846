"""Randomized request header synthesis.

A header set is drawn per attempt: first a device class (weighted by the
active profile), then one user agent of that class, one referer and one
accept-language, each uniformly.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from schoolyard.common.reference_data import (
    ACCEPT_LANGUAGES,
    REFERERS,
    USER_AGENTS,
    DeviceClass,
)


@dataclass(frozen=True)
class HeaderProfile:
    """Device-class weights for the user agent draw.

    Weights need not sum to one; a zero weight removes the class.
    """

    desktop: float = 0.7
    mobile: float = 0.25
    bot: float = 0.05

    def __post_init__(self) -> None:
        weights = (self.desktop, self.mobile, self.bot)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError(f"Invalid device weights: {weights}")

    def weighted_classes(self) -> tuple[list[DeviceClass], list[float]]:
        pairs = [
            (DeviceClass.DESKTOP, self.desktop),
            (DeviceClass.MOBILE, self.mobile),
            (DeviceClass.BOT, self.bot),
        ]
        pairs = [(cls, w) for cls, w in pairs if w > 0]
        return [cls for cls, _ in pairs], [w for _, w in pairs]


PROFILES: dict[str, HeaderProfile] = {
    "default": HeaderProfile(),
    "no_bots": HeaderProfile(desktop=0.75, mobile=0.25, bot=0.0),
}


class HeaderSynthesizer:
    """Draws internally consistent header sets from the reference pools.

    Example::

        synthesizer = HeaderSynthesizer(PROFILES["no_bots"], rng=random.Random(7))
        headers = synthesizer.synthesize()
    """

    def __init__(
        self,
        profile: HeaderProfile | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.profile = profile or PROFILES["default"]
        self._rng = rng or random.Random()
        self._classes, self._weights = self.profile.weighted_classes()

    def draw_device(self) -> DeviceClass:
        return self._rng.choices(self._classes, weights=self._weights, k=1)[0]

    def synthesize(self) -> dict[str, str]:
        """Return a fresh header dict for one attempt."""
        device = self.draw_device()
        return {
            "User-Agent": self._rng.choice(USER_AGENTS[device]),
            "Referer": self._rng.choice(REFERERS),
            "Accept-Language": self._rng.choice(ACCEPT_LANGUAGES),
            "Accept": (
                "text/html,application/xhtml+xml,application/xml;"
                "q=0.9,*/*;q=0.8"
            ),
        }
