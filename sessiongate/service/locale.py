from __future__ import annotations

from typing import Optional

SUPPORTED_LOCALES = ("ko", "en", "ja", "ru")
DEFAULT_LOCALE = "ko"

COUNTRY_LOCALES = {
    "KR": "ko",
    # English-speaking countries
    "US": "en",
    "GB": "en",
    "AU": "en",
    "CA": "en",
    "NZ": "en",
    "IE": "en",
    "ZA": "en",
    "IN": "en",
    "SG": "en",
    "MY": "en",
    "PH": "en",
    "JP": "ja",
    # Russian-speaking countries
    "RU": "ru",
    "BY": "ru",
    "KZ": "ru",
    "KG": "ru",
    "TJ": "ru",
    "UZ": "ru",
    "AM": "ru",
    "AZ": "ru",
    "MD": "ru",
}


def locale_for_country(country: Optional[str], default: str = DEFAULT_LOCALE) -> str:
    """Map an ISO country code (e.g. from ``cf-ipcountry``) to a supported locale."""
    if default not in SUPPORTED_LOCALES:
        default = DEFAULT_LOCALE
    if not country:
        return default
    return COUNTRY_LOCALES.get(country.strip().upper(), default)
