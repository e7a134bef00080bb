import json

import pytest

from sessiongate.service.client_info import ClientInfo, normalize_ip
from sessiongate.service.locale import DEFAULT_LOCALE, SUPPORTED_LOCALES, locale_for_country


class TestNormalizeIp:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("::ffff:127.0.0.1", "127.0.0.1"),
            ("::FFFF:10.0.0.2", "10.0.0.2"),
            (" 192.0.2.1 ", "192.0.2.1"),
            ("2001:db8::1", "2001:db8::1"),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_ip(raw) == expected


class TestClientInfo:
    def test_first_forwarded_hop_wins(self):
        info = ClientInfo.from_headers(
            {"x-forwarded-for": "::ffff:198.51.100.9, 10.0.0.1", "user-agent": "UA"},
            peer_ip="10.0.0.254",
        )

        assert info.ip_address == "198.51.100.9"
        assert info.user_agent == "UA"

    def test_falls_back_to_peer(self):
        info = ClientInfo.from_headers({}, peer_ip="::ffff:172.16.0.5")

        assert info.ip_address == "172.16.0.5"
        assert info.user_agent is None

    def test_to_json(self):
        info = ClientInfo(ip_address="1.2.3.4", user_agent="UA")

        assert json.loads(info.to_json()) == {"ip_address": "1.2.3.4", "user_agent": "UA"}


class TestLocale:
    def test_known_countries(self):
        assert locale_for_country("KR") == "ko"
        assert locale_for_country("gb") == "en"
        assert locale_for_country("JP") == "ja"
        assert locale_for_country("BY") == "ru"

    def test_unknown_and_missing_fall_back(self):
        assert locale_for_country("FR") == DEFAULT_LOCALE
        assert locale_for_country(None, "en") == "en"
        assert locale_for_country("", "ja") == "ja"

    def test_unsupported_default_is_ignored(self):
        assert locale_for_country("FR", "de") == DEFAULT_LOCALE

    def test_every_mapping_targets_supported_locale(self):
        from sessiongate.service.locale import COUNTRY_LOCALES

        assert set(COUNTRY_LOCALES.values()) <= set(SUPPORTED_LOCALES)
