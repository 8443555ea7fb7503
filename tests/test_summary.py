"""Tests for the summary line codec."""

import logging
from datetime import UTC, datetime

import pytest

from onionlens.models import NodeRecord
from onionlens.summary import format_summary_line, parse_summary_line

TORKAZ = (
    "r\tTorkaZ\t000C5F55BD4814B917CC474BD537F1A3B33CCE2A\t"
    "62.216.201.221;;62.216.201.222+62.216.201.223\t"
    "2013-04-19\t05:00:00\t9001\t0\tRunning,Valid\t20\tde\tnull\t"
    "-1\treject\t1-65535\t2013-04-18\t05:00:00\t"
    "2013-04-19\t05:00:00\tAS8767\ttorkaz <klaus dot zufall at "
    "gmx dot de> <fb-token:np5_g_83jmf=>"
)

FERRARI = (
    "r\tFerrari458\t001C13B3A55A71B977CA65EC85539D79C653A3FC\t"
    "68.38.171.200;[2001:4f8:3:2e::51]:9001;\t"
    "2013-04-24\t12:00:00\t9001\t9030\t"
    "Fast,Named,Running,V2Dir,Valid\t1140\tus\t"
    "c-68-38-171-200.hsd1.pa.comcast.net\t1366805763009\treject\t"
    "1-65535\t2013-02-12\t16:00:00\t2013-02-26\t18:00:00\t"
    "AS7922\t"
)

GUMMY = (
    "b\tgummy\t1FEDE50ED8DBA1DD9F9165F78C8131E4A44AB756\t10.63.169.98;;\t"
    "2013-04-24\t01:07:04\t9001\t0\tRunning,Valid\t-1\t??\tnull\t"
    "-1\tnull\tnull\t2013-01-16\t21:07:04\tnull\tnull\tnull\tnull"
)


class TestParseSummaryLine:
    """parse_summary_line() decodes every positional field."""

    def test_relay_fields(self) -> None:
        record = parse_summary_line(TORKAZ)

        assert record is not None
        assert record.kind == "relay"
        assert record.nickname == "TorkaZ"
        assert record.fingerprint == "000C5F55BD4814B917CC474BD537F1A3B33CCE2A"
        assert record.address == "62.216.201.221"
        assert record.or_addresses == set()
        assert record.exit_addresses == {"62.216.201.222", "62.216.201.223"}
        assert record.last_seen == datetime(2013, 4, 19, 5, tzinfo=UTC)
        assert record.first_seen == datetime(2013, 4, 18, 5, tzinfo=UTC)
        assert record.or_port == 9001
        assert record.dir_port == 0
        assert record.flags == {"Running", "Valid"}
        assert record.consensus_weight == 20
        assert record.country_code == "de"
        assert record.host_name is None
        assert record.last_rdns_lookup == -1
        assert record.default_policy == "reject"
        assert record.port_list == "1-65535"
        assert record.as_number == "AS8767"
        assert record.contact == (
            "torkaz <klaus dot zufall at gmx dot de> <fb-token:np5_g_83jmf=>"
        )

    def test_host_name_and_or_addresses(self) -> None:
        record = parse_summary_line(FERRARI)

        assert record is not None
        assert record.or_addresses == {"[2001:4f8:3:2e::51]:9001"}
        assert record.host_name == "c-68-38-171-200.hsd1.pa.comcast.net"
        assert record.last_rdns_lookup == 1366805763009
        assert record.contact is None

    def test_last_changed_seeds_history(self) -> None:
        record = parse_summary_line(FERRARI)

        assert record is not None
        changed = datetime(2013, 2, 26, 18, tzinfo=UTC)
        assert list(record.last_addresses) == [record.last_seen, changed]
        assert len(set(record.last_addresses.values())) == 1
        assert record.last_changed_addresses() == changed

    def test_bridge(self) -> None:
        record = parse_summary_line(GUMMY)

        assert record is not None
        assert record.kind == "bridge"
        assert record.consensus_weight == -1
        assert record.country_code == "??"
        assert record.as_number is None
        assert record.pool_assignment is None
        # "null null" last-changed falls back to last seen.
        assert record.last_changed_addresses() == record.last_seen

    def test_space_separated_contact_takes_rest_of_line(self) -> None:
        line = (
            "r TorkaZ 000C5F55BD4814B917CC474BD537F1A3B33CCE2A 62.216.201.221;; "
            "2013-04-19 05:00:00 9001 0 Running,Valid 20 de null -1 "
            "reject 1-65535 2013-04-18 05:00:00 2013-04-19 05:00:00 "
            "AS8767 klaus dot zufall"
        )
        record = parse_summary_line(line)

        assert record is not None
        assert record.contact == "klaus dot zufall"

    def test_minimal_line(self) -> None:
        record = parse_summary_line(
            "r TorkaZ 000C5F55BD4814B917CC474BD537F1A3B33CCE2A 62.216.201.221 "
            "2013-04-19 05:00:00 9001 0 Running,Valid"
        )

        assert record is not None
        assert record.consensus_weight == -1
        assert record.first_seen == record.last_seen

    @pytest.mark.parametrize(
        "line",
        [
            "r TorkaZ 000C5F55BD4814B917CC474BD537F1A3B33CCE2A",
            "x TorkaZ 000C5F55BD4814B917CC474BD537F1A3B33CCE2A 1.2.3.4 "
            "2013-04-19 05:00:00 9001 0 Running",
            "r TorkaZ 000C5F55BD4814B917CC474BD537F1A3B33CCE2A 1.2.3.4;; "
            "2013-04-19 05:00:00 notaport 0 Running",
            "r TorkaZ 000C5F55BD4814B917CC474BD537F1A3B33CCE2A 1.2.3.4;x "
            "2013-04-19 05:00:00 9001 0 Running",
        ],
        ids=["too-few-fields", "unknown-kind", "bad-port", "bad-addresses"],
    )
    def test_malformed_lines_are_skipped(
        self, line: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="onionlens.summary"):
            assert parse_summary_line(line) is None
        assert caplog.records


class TestFormatSummaryLine:
    """format_summary_line() writes what parse_summary_line() reads."""

    @pytest.mark.parametrize("line", [TORKAZ, FERRARI, GUMMY])
    def test_fixture_lines_survive(self, line: str) -> None:
        record = parse_summary_line(line)
        assert record is not None

        again = parse_summary_line(format_summary_line(record))

        assert again == record

    def test_null_placeholders(self) -> None:
        seen = datetime(2013, 4, 24, 12, tzinfo=UTC)
        record = NodeRecord(
            kind="relay",
            nickname="Unnamed",
            fingerprint="A" * 40,
            address="10.0.0.1",
            or_port=443,
            dir_port=0,
            last_seen=seen,
            first_seen=seen,
        )

        fields = format_summary_line(record).split("\t")

        assert len(fields) == 22
        assert fields[0] == "r"
        assert fields[3] == "10.0.0.1;;"
        assert fields[10] == "??"
        assert fields[11] == "null"
        assert fields[12] == "-1"
        assert fields[19:] == ["null", "null", "null"]

    def test_contact_is_flattened(self) -> None:
        seen = datetime(2013, 4, 24, 12, tzinfo=UTC)
        record = NodeRecord(
            kind="relay",
            nickname="Unnamed",
            fingerprint="A" * 40,
            address="10.0.0.1",
            or_port=443,
            dir_port=0,
            last_seen=seen,
            first_seen=seen,
            contact="line one\n\tline two",
        )

        fields = format_summary_line(record).split("\t")

        assert fields[20] == "line one line two"
