"""Tests for the reverse DNS helper."""

import socket
from unittest.mock import patch

from onionlens.dns import reverse_lookup, reverse_lookup_all


class TestReverseLookup:
    """reverse_lookup() wraps socket.gethostbyaddr correctly."""

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_host_name(self, mock_gha: patch) -> None:
        mock_gha.return_value = (
            "c-68-38-171-200.hsd1.pa.comcast.net",
            [],
            ["68.38.171.200"],
        )

        assert reverse_lookup("68.38.171.200") == "c-68-38-171-200.hsd1.pa.comcast.net"
        mock_gha.assert_called_once_with("68.38.171.200")

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_lowercases(self, mock_gha: patch) -> None:
        mock_gha.return_value = ("Relay.Example.ORG", [], ["10.0.0.1"])

        assert reverse_lookup("10.0.0.1") == "relay.example.org"

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_herror_is_none(self, mock_gha: patch) -> None:
        """Addresses without a PTR record are not an error."""
        mock_gha.side_effect = socket.herror(1, "Unknown host")

        assert reverse_lookup("10.0.0.1") is None

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_gaierror_is_none(self, mock_gha: patch) -> None:
        mock_gha.side_effect = socket.gaierror(
            socket.EAI_NONAME, "Name or service not known"
        )

        assert reverse_lookup("10.0.0.1") is None

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_address_echoed_back_is_none(self, mock_gha: patch) -> None:
        mock_gha.return_value = ("10.0.0.1", [], ["10.0.0.1"])

        assert reverse_lookup("10.0.0.1") is None


class TestReverseLookupAll:
    """reverse_lookup_all() resolves each distinct address once."""

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_deduplicates(self, mock_gha: patch) -> None:
        mock_gha.return_value = ("relay.example.org", [], ["10.0.0.1"])

        result = reverse_lookup_all(["10.0.0.1", "10.0.0.1", "10.0.0.1"])

        assert result == {"10.0.0.1": "relay.example.org"}
        mock_gha.assert_called_once_with("10.0.0.1")

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_mixed_results(self, mock_gha: patch) -> None:
        def fake(address: str) -> tuple:
            if address == "10.0.0.2":
                raise socket.herror(1, "Unknown host")
            return ("relay.example.org", [], [address])

        mock_gha.side_effect = fake

        result = reverse_lookup_all(["10.0.0.2", "10.0.0.1"])

        assert result == {"10.0.0.1": "relay.example.org", "10.0.0.2": None}

    @patch("onionlens.dns.socket.gethostbyaddr")
    def test_empty_input(self, mock_gha: patch) -> None:
        assert reverse_lookup_all([]) == {}
        mock_gha.assert_not_called()
