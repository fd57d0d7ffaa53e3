import asyncio
import datetime as dt

import pytest
from zoneinfo import ZoneInfo

from aggregator import (
    FieldError,
    MetricsAggregator,
    cycle_range,
    memory_query,
    minutes_range,
    traffic_query,
    TRANSMIT,
)
from cycles import InvalidDate
from promql import Empty, Matrix, QueryFailed, Sample, Series, Vector


UTC = dt.timezone.utc
NOW = dt.datetime(2024, 4, 15, 12, 0, tzinfo=UTC)
LABELS = {
    "__name__": "up",
    "instance": "a:9100",
    "job": "node-exporter",
    "expiry": "2024-03-31",
    "price": "10USD",
    "info": "Tokyo",
    "cycle": "monthly",
}


def vec(value, **labels):
    return Vector([Sample(metric=labels, value=float(value))])


def vecs(values):
    return Vector([Sample(metric={"instance": k}, value=float(v)) for k, v in values.items()])


class FakeProm:
    """Answers queries from (needles, outcome) rules; the first rule whose
    needles all occur in the expression wins, otherwise the result is empty."""

    def __init__(self, rules=(), range_rules=(), labels=()):
        self.rules = list(rules)
        self.range_rules = list(range_rules)
        self.labels = list(labels)
        self.instant_calls = []
        self.range_calls = []

    async def instant_query(self, expr, at=None):
        self.instant_calls.append(expr)
        return await self._answer(self.rules, expr)

    async def range_query(self, expr, start, end, step):
        self.range_calls.append((expr, start, end, step))
        return await self._answer(self.range_rules, expr)

    async def fetch_label_sets(self, expr, at=None):
        return [dict(l) for l in self.labels]

    @staticmethod
    async def _answer(rules, expr):
        for needles, outcome in rules:
            if all(n in expr for n in needles):
                if isinstance(outcome, BaseException):
                    raise outcome
                if callable(outcome):
                    return await outcome()
                return outcome
        return Empty("vector")


async def _slow():
    await asyncio.sleep(5)
    return vec(1)


FULL_RULES = [
    (("increase(node_network_transmit", "[15d]"), vec(1000)),
    (("increase(node_network_receive", "[15d]"), vec(2000)),
    (("increase(node_network_transmit", "[20880m]"), vec(300)),
    (("increase(node_network_receive", "[20880m]"), vec(400)),
    (("increase(node_network_transmit", "[720m]"), vec(30)),
    (("increase(node_network_receive", "[720m]"), vec(40)),
    (("rate(node_network_transmit", "[1m]"), vec(1024)),
    (("rate(node_network_receive", "[1m]"), vec(2048)),
    (("node_cpu_seconds_total",), vec(12.5)),
    (("(1 - avg(node_memory",), vec(40)),
    (("(1 - avg(node_filesystem",), vec(55)),
    (("node_memory_MemTotal_bytes",), vec(8 * 1024 ** 3)),
    (("node_memory_MemAvailable_bytes",), vec(4 * 1024 ** 3)),
    (("node_filesystem_size_bytes",), vec(100 * 1024 ** 3)),
    (("node_filesystem_avail_bytes",), vec(45 * 1024 ** 3)),
    (("time() - node_boot_time_seconds",), vec(90000)),
]
YESTERDAY_RULES = [
    (("transmit",), Matrix([Series(metric={}, values=[(1.0, 50.0), (2.0, 70.0)])])),
    (("receive",), Matrix([Series(metric={}, values=[(2.0, 80.0)])])),
]


def test_full_report():
    prom = FakeProm(FULL_RULES, YESTERDAY_RULES)
    report, errors = asyncio.run(MetricsAggregator(prom).build_instance_report(LABELS, NOW))

    assert errors == []
    assert report.window.last_reset_at == dt.datetime(2024, 3, 31, tzinfo=UTC)
    assert report.window.next_reset_at == dt.datetime(2024, 4, 30, tzinfo=UTC)
    assert report.time_left < dt.timedelta(0)
    assert report.cycle_traffic.total == 3000
    assert (report.month_traffic.transmitted, report.month_traffic.received) == (300, 400)
    assert report.today_traffic.total == 70
    assert (report.yesterday_traffic.transmitted, report.yesterday_traffic.received) == (70, 80)
    assert (report.upload_bps, report.download_bps) == (1024, 2048)
    assert report.resources.cpu_percent == 12.5
    assert report.resources.mem_percent == 40
    assert report.resources.disk_available == 45 * 1024 ** 3
    assert report.uptime == dt.timedelta(hours=25)
    assert (report.instance, report.info, report.price, report.cycle) == ("a:9100", "Tokyo", "10USD", "monthly")


def test_queries_are_scoped_to_host_without_bookkeeping_labels():
    prom = FakeProm(FULL_RULES, YESTERDAY_RULES)
    asyncio.run(MetricsAggregator(prom).build_instance_report(LABELS, NOW))

    exprs = prom.instant_calls + [c[0] for c in prom.range_calls]
    assert len(exprs) == 18
    for expr in exprs:
        assert 'instance="a:9100"' in expr
        for key in ("expiry", "price", "info", "cycle", "job", "__name__"):
            assert f"{key}=" not in expr
    assert 'sum(increase(node_network_transmit_bytes_total{instance="a:9100", device=~"eth.*|ens.*|eno.*|enp.*|enx.*|enX.*|wlan.*|venet.*"}[15d]))' in exprs
    assert 'avg(rate(node_cpu_seconds_total{instance="a:9100", mode!="idle"}[15d])) * 100' in exprs


def test_yesterday_is_a_one_day_step_range_over_previous_day():
    prom = FakeProm(FULL_RULES, YESTERDAY_RULES)
    asyncio.run(MetricsAggregator(prom).build_instance_report(LABELS, NOW))

    _, start, end, step = prom.range_calls[0]
    assert start == dt.datetime(2024, 4, 14, tzinfo=UTC)
    assert end == dt.datetime(2024, 4, 14, 23, 59, 59, tzinfo=UTC)
    assert step == dt.timedelta(days=1)


def test_memory_without_series_is_flagged_missing():
    rules = [r for r in FULL_RULES if "node_memory" not in r[0][0]]
    prom = FakeProm(rules, YESTERDAY_RULES)
    report, errors = asyncio.run(MetricsAggregator(prom).build_instance_report(LABELS, NOW))

    assert report.resources.mem_percent == 0
    assert report.resources.mem_total == 0
    assert report.resources.mem_available == 0
    assert report.resources.cpu_percent == 12.5
    missing = {e.field for e in errors if e.kind == "missing"}
    assert missing == {"memory", "memory_total", "memory_available"}


def test_best_effort_failure_is_recorded_not_raised():
    rules = [(("increase(node_network_transmit", "[20880m]"), QueryFailed("HTTP 503"))] + FULL_RULES
    prom = FakeProm(rules, YESTERDAY_RULES)
    report, errors = asyncio.run(MetricsAggregator(prom).build_instance_report(LABELS, NOW))

    assert errors == [FieldError("month_traffic", "failed", "HTTP 503")]
    assert report.month_traffic.total == 0
    assert report.cycle_traffic.total == 3000


def test_cycle_traffic_failure_is_fatal():
    rules = [(("increase(node_network_receive", "[15d]"), QueryFailed("HTTP 500"))] + FULL_RULES
    prom = FakeProm(rules, YESTERDAY_RULES)
    with pytest.raises(QueryFailed):
        asyncio.run(MetricsAggregator(prom).build_instance_report(LABELS, NOW))


def test_invalid_expiry_is_fatal_before_any_query():
    prom = FakeProm(FULL_RULES)
    with pytest.raises(InvalidDate):
        asyncio.run(MetricsAggregator(prom).build_instance_report(dict(LABELS, expiry="31/03/2024"), NOW))
    assert prom.instant_calls == []


def test_reset_day_overrides_expiry_and_stays_out_of_filter():
    labels = dict(LABELS, reset_day="2024-01-10")
    prom = FakeProm(FULL_RULES, YESTERDAY_RULES)
    report, _ = asyncio.run(MetricsAggregator(prom).build_instance_report(labels, NOW))

    assert report.window.last_reset_at == dt.datetime(2024, 4, 10, tzinfo=UTC)
    assert all("reset_day" not in e for e in prom.instant_calls)


def test_slow_field_times_out_and_keeps_others():
    rules = [(("time() - node_boot_time_seconds",), _slow)] + FULL_RULES
    prom = FakeProm(rules, YESTERDAY_RULES)
    report, errors = asyncio.run(MetricsAggregator(prom, deadline=0.2).build_instance_report(LABELS, NOW))

    assert errors == [FieldError("uptime", "timeout", "deadline exceeded")]
    assert report.uptime is None
    assert report.cycle_traffic.total == 3000


def test_slow_cycle_traffic_is_fatal():
    rules = [(("increase(node_network_transmit", "[15d]"), _slow)] + FULL_RULES
    prom = FakeProm(rules, YESTERDAY_RULES)
    with pytest.raises(QueryFailed):
        asyncio.run(MetricsAggregator(prom, deadline=0.2).build_instance_report(LABELS, NOW))


def test_missing_boot_time_is_not_an_error():
    rules = [r for r in FULL_RULES if "time() - node_boot_time_seconds" not in r[0]]
    report, errors = asyncio.run(MetricsAggregator(FakeProm(rules, YESTERDAY_RULES)).build_instance_report(LABELS, NOW))
    assert report.uptime is None
    assert errors == []


def test_empty_filter_drops_the_label_block():
    assert traffic_query(TRANSMIT, "", "1h") == (
        'sum(increase(node_network_transmit_bytes_total{device=~"eth.*|ens.*|eno.*|enp.*|enx.*|enX.*|wlan.*|venet.*"}[1h]))'
    )
    assert memory_query("") == "(1 - avg(node_memory_MemAvailable_bytes) / avg(node_memory_MemTotal_bytes))*100"


def test_range_windows():
    assert cycle_range(dt.timedelta(0)) == "0h1m"
    assert cycle_range(dt.timedelta(hours=5, minutes=30)) == "5h30m"
    assert cycle_range(dt.timedelta(days=3, hours=7)) == "3d"
    assert minutes_range(dt.timedelta(seconds=20)) == "1m"
    assert minutes_range(dt.timedelta(hours=2)) == "120m"


def test_fleet_rankings():
    rules = [
        (("sum by (instance) (increase(node_network_transmit", "[720m]"), vecs({"a": 10, "b": 5})),
        (("sum by (instance) (increase(node_network_receive", "[720m]"), vecs({"a": 1, "b": 8})),
        (("sum by (instance) (rate(node_network_transmit",), vecs({"a": 3, "b": 9})),
        (("node_cpu_seconds_total",), vecs({"a": 91.5, "b": 12})),
        (("node_memory",), QueryFailed("HTTP 500")),
    ]
    range_rules = [
        (("transmit",), Matrix([Series({"instance": "c"}, [(1.0, 500.0)]), Series({"instance": "a"}, [(1.0, 7.0)])])),
    ]
    prom = FakeProm(rules, range_rules)
    rankings, errors = asyncio.run(MetricsAggregator(prom).fleet_rankings(NOW))

    assert rankings["today_upload"].instance == "a"
    assert rankings["today_download"].instance == "b"
    assert (rankings["today_total"].instance, rankings["today_total"].value) == ("b", 13)
    assert rankings["upload_rate"].instance == "b"
    assert rankings["cpu"].value == 91.5
    assert rankings["yesterday_upload"].instance == "c"
    assert rankings["yesterday_download"] is None
    assert rankings["yesterday_total"].instance == "c"
    assert rankings["memory"] is None
    assert rankings["month_total"] is None
    assert [e.field for e in errors] == ["rank_memory"]
    assert all("instance=" not in e for e in prom.instant_calls)


def test_fleet_overview_counts_and_degrades():
    rules = [
        (('up{job="node-exporter"}',), Vector([
            Sample({"instance": "a:9100"}, 1.0),
            Sample({"instance": "b:9100"}, 0.0),
            Sample({"instance": "c:9100"}, 1.0),
        ])),
        (("increase(node_network_transmit", "[720m]"), vec(30)),
        (("increase(node_network_receive", "[720m]"), vec(40)),
        (("rate(node_network",), QueryFailed("HTTP 502")),
        (("avg(rate(node_cpu_seconds_total{mode!=\"idle\"}[10m]))",), vec(20)),
    ]
    prom = FakeProm(rules)
    overview, errors = asyncio.run(MetricsAggregator(prom).fleet_overview(NOW))

    assert (overview.total_instances, overview.online_instances, overview.offline_instances) == (3, 2, 1)
    assert overview.today_traffic.total == 70
    assert overview.resources.cpu_percent == 20
    failed = {e.field for e in errors}
    assert "network_rate" in failed
    assert "rank_upload_rate" in failed and "rank_download_rate" in failed
    assert "cpu" not in failed
    assert "memory_total" not in failed


def test_daily_traffic_covers_each_day_of_cycle():
    # points are stamped at the end of the day they cover
    apr2 = dt.datetime(2024, 4, 2, tzinfo=UTC).timestamp()
    apr3 = dt.datetime(2024, 4, 3, tzinfo=UTC).timestamp()
    range_rules = [
        (("transmit",), Matrix([Series({}, [(apr2, 100.0), (apr3, 200.0)])])),
        (("receive",), Matrix([Series({}, [(apr2, 1.0)])])),
    ]
    prom = FakeProm(range_rules=range_rules)
    labels = dict(LABELS, expiry="2025-04-01")
    now = dt.datetime(2024, 4, 3, 9, tzinfo=UTC)
    days = asyncio.run(MetricsAggregator(prom).daily_traffic(labels, now))

    assert [d for d, _ in days] == [dt.date(2024, 4, 1), dt.date(2024, 4, 2), dt.date(2024, 4, 3)]
    assert days[0][1].total == 101
    assert days[1][1].transmitted == 200
    assert days[2][1].total == 0
    _, start, end, step = prom.range_calls[0]
    assert start == dt.datetime(2024, 4, 2, tzinfo=UTC)
    assert end == dt.datetime(2024, 4, 4, tzinfo=UTC)


def test_find_instance():
    prom = FakeProm(labels=[{"instance": "a:9100"}, {"instance": "b:9100", "expiry": "2024-01-01"}])
    agg = MetricsAggregator(prom)
    assert asyncio.run(agg.find_instance("b:9100"))["expiry"] == "2024-01-01"
    assert asyncio.run(agg.find_instance("zzz")) is None


def test_failed_ranking_does_not_hide_fleet_value():
    rules = [
        (("avg by (instance) (node_memory",), QueryFailed("HTTP 500")),
        (("(1 - avg(node_memory",), vec(40)),
    ]
    overview, errors = asyncio.run(MetricsAggregator(FakeProm(rules)).fleet_overview(NOW))

    assert overview.resources.mem_percent == 40.0
    assert overview.rankings["memory"] is None
    failed = {e.field for e in errors}
    assert "rank_memory" in failed
    assert "memory" not in failed


def test_windows_follow_real_time_across_dst_change():
    tz = ZoneInfo("Europe/Berlin")
    now = dt.datetime(2024, 3, 31, 12, 0, tzinfo=tz)
    labels = dict(LABELS, expiry="2024-01-31")
    prom = FakeProm(FULL_RULES, YESTERDAY_RULES)
    report, _ = asyncio.run(MetricsAggregator(prom).build_instance_report(labels, now))

    assert report.window.elapsed_since_reset == dt.timedelta(hours=11)
    assert any("[11h]" in e for e in prom.instant_calls)
    # today: 11h since local midnight, month: 30d 11h since March 1st
    assert any("[660m]" in e for e in prom.instant_calls)
    assert any("[43860m]" in e for e in prom.instant_calls)
    assert not any("[720m]" in e for e in prom.instant_calls)
