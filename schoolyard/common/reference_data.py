"""Static pools of identity strings for header synthesis.

User agents are grouped by device class so the header synthesizer can
weight the draw by device before picking a string.
"""

from __future__ import annotations

from enum import Enum


class DeviceClass(Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    BOT = "bot"


USER_AGENTS: dict[DeviceClass, tuple[str, ...]] = {
    DeviceClass.DESKTOP: (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:123.0) Gecko/20100101 "
        "Firefox/123.0",
    ),
    DeviceClass.MOBILE: (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 "
        "Mobile/15E148 Safari/604.1",
        "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Mobile Safari/537.36",
    ),
    DeviceClass.BOT: (
        "Mozilla/5.0 (compatible; Googlebot/2.1; "
        "+http://www.google.com/bot.html)",
    ),
}

REFERERS: tuple[str, ...] = (
    "https://www.google.com/",
    "https://www.facebook.com/",
    "https://twitter.com/",
    "https://www.reddit.com/",
    "https://www.wikipedia.org/",
    "https://www.amazon.com/",
    "https://mail.google.com/",
)

ACCEPT_LANGUAGES: tuple[str, ...] = (
    "en-US,en;q=0.9",
    "en-GB,en;q=0.8",
    "es-ES,es;q=0.7",
    "fr-FR,fr;q=0.6",
)
