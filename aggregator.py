from __future__ import annotations

import asyncio
import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Tuple

from cycles import (
    CycleWindow,
    anchor_date,
    compute_cycle_window,
    elapsed,
    start_of_day,
    start_of_month,
    time_left,
)
from formatting import format_duration
from matchers import EXCLUDED_LABELS, build_filter, selector
from promql import (
    Matrix,
    NoData,
    PromClient,
    QueryFailed,
    Vector,
    require_value,
    scalar_value,
    values_by_label,
)


logger = logging.getLogger(__name__)

DEFAULT_INSTANCES_QUERY = 'up{job="node-exporter"}'
DEFAULT_DEADLINE = 30.0

TRANSMIT = "node_network_transmit_bytes_total"
RECEIVE = "node_network_receive_bytes_total"
# Physical/virtual NICs only; skips lo, docker, veth, tun and friends
DEVICE_MATCHER = 'device=~"eth.*|ens.*|eno.*|enp.*|enx.*|enX.*|wlan.*|venet.*"'
NON_IDLE = 'mode!="idle"'
ROOTFS_EXCLUDED = 'fstype!="rootfs"'
REAL_FILESYSTEMS = 'fstype=~"ext4|xfs"'
FLEET_CPU_WINDOW = "10m"
RATE_WINDOW = "1m"
MIN_RANGE = dt.timedelta(minutes=1)
ONE_DAY = dt.timedelta(days=1)


# -----------------------------
# Report values
# -----------------------------
@dataclass(frozen=True)
class TrafficSample:
    transmitted: float = 0.0
    received: float = 0.0

    @property
    def total(self) -> float:
        return self.transmitted + self.received


@dataclass(frozen=True)
class ResourceSnapshot:
    cpu_percent: float = 0.0
    mem_percent: float = 0.0
    disk_percent: float = 0.0
    mem_total: float = 0.0
    mem_available: float = 0.0
    disk_total: float = 0.0
    disk_available: float = 0.0


@dataclass(frozen=True)
class FieldError:
    field: str
    kind: str  # failed | missing | timeout
    message: str


@dataclass(frozen=True)
class FleetRanking:
    instance: str
    value: float


@dataclass
class InstanceReport:
    labels: Dict[str, str]
    window: CycleWindow
    time_left: Optional[dt.timedelta] = None
    cycle_traffic: TrafficSample = field(default_factory=TrafficSample)
    month_traffic: TrafficSample = field(default_factory=TrafficSample)
    yesterday_traffic: TrafficSample = field(default_factory=TrafficSample)
    today_traffic: TrafficSample = field(default_factory=TrafficSample)
    upload_bps: float = 0.0
    download_bps: float = 0.0
    resources: ResourceSnapshot = field(default_factory=ResourceSnapshot)
    uptime: Optional[dt.timedelta] = None

    @property
    def instance(self) -> str:
        return self.labels.get("instance", "")

    @property
    def info(self) -> str:
        return self.labels.get("info", "")

    @property
    def expiry(self) -> str:
        return self.labels.get("expiry", "")

    @property
    def price(self) -> str:
        return self.labels.get("price", "")

    @property
    def cycle(self) -> str:
        return self.labels.get("cycle", "")


@dataclass
class FleetOverview:
    total_instances: int = 0
    online_instances: int = 0
    offline_instances: int = 0
    yesterday_traffic: TrafficSample = field(default_factory=TrafficSample)
    today_traffic: TrafficSample = field(default_factory=TrafficSample)
    month_traffic: TrafficSample = field(default_factory=TrafficSample)
    upload_bps: float = 0.0
    download_bps: float = 0.0
    resources: ResourceSnapshot = field(default_factory=ResourceSnapshot)
    rankings: Dict[str, Optional[FleetRanking]] = field(default_factory=dict)


# -----------------------------
# Query builders
# -----------------------------
def cycle_range(span: dt.timedelta) -> str:
    """PromQL range for the billing window, never shorter than a minute."""
    return format_duration(max(span, MIN_RANGE))


def minutes_range(span: dt.timedelta) -> str:
    return f"{max(1, int(span.total_seconds() // 60))}m"


def traffic_query(counter: str, label_filter: str, window: str, *, fn: str = "increase") -> str:
    return f"sum({fn}({selector(counter, label_filter, DEVICE_MATCHER)}[{window}]))"


def cpu_query(label_filter: str, window: str) -> str:
    return f"avg(rate({selector('node_cpu_seconds_total', label_filter, NON_IDLE)}[{window}])) * 100"


def memory_query(label_filter: str) -> str:
    avail = selector("node_memory_MemAvailable_bytes", label_filter)
    total = selector("node_memory_MemTotal_bytes", label_filter)
    return f"(1 - avg({avail}) / avg({total}))*100"


def disk_query(label_filter: str) -> str:
    avail = selector("node_filesystem_avail_bytes", label_filter, ROOTFS_EXCLUDED)
    size = selector("node_filesystem_size_bytes", label_filter, ROOTFS_EXCLUDED)
    return f"(1 - avg({avail}) / avg({size}))*100"


def uptime_query(label_filter: str) -> str:
    return f"time() - {selector('node_boot_time_seconds', label_filter)}"


def _by_instance_traffic(counter: str, window: str, *, fn: str = "increase") -> str:
    return f"sum by (instance) ({fn}({selector(counter, DEVICE_MATCHER)}[{window}]))"


def top_instance(values: Mapping[str, float]) -> Optional[FleetRanking]:
    candidates = [(k, v) for k, v in values.items() if k and not math.isnan(v)]
    if not candidates:
        return None
    instance, value = max(candidates, key=lambda kv: kv[1])
    return FleetRanking(instance=instance, value=value)


def _field_error(name: str, exc: BaseException) -> FieldError:
    if isinstance(exc, NoData):
        return FieldError(name, "missing", str(exc))
    if isinstance(exc, asyncio.TimeoutError):
        return FieldError(name, "timeout", "deadline exceeded")
    return FieldError(name, "failed", str(exc))


# -----------------------------
# Aggregator
# -----------------------------
class MetricsAggregator:
    def __init__(
        self,
        client: PromClient,
        *,
        instances_query: str = DEFAULT_INSTANCES_QUERY,
        excluded_labels: frozenset[str] = EXCLUDED_LABELS,
        deadline: float = DEFAULT_DEADLINE,
    ):
        self._client = client
        self._instances_query = instances_query
        self._excluded = excluded_labels
        self._deadline = deadline

    def label_filter(self, labels: Mapping[str, str]) -> str:
        return build_filter(labels, self._excluded)

    async def _run_fields(self, jobs: Dict[str, Awaitable[Any]]) -> Tuple[Dict[str, Any], Dict[str, BaseException]]:
        """Run independent sub-queries concurrently under one deadline.

        Finished results are kept; unfinished ones are cancelled and reported
        as timeouts. Anything other than a query/data/timeout error propagates.
        """
        if not jobs:
            return {}, {}
        tasks = {name: asyncio.ensure_future(job) for name, job in jobs.items()}
        _, pending = await asyncio.wait(tasks.values(), timeout=self._deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, Any] = {}
        failures: Dict[str, BaseException] = {}
        for name, task in tasks.items():
            if task in pending:
                failures[name] = asyncio.TimeoutError()
                continue
            exc = task.exception()
            if exc is None:
                results[name] = task.result()
            elif isinstance(exc, (QueryFailed, NoData, asyncio.TimeoutError)):
                failures[name] = exc
            else:
                raise exc
        return results, failures

    # Sub-operations -------------------------------------------------------
    async def traffic(self, label_filter: str, window: str, at: dt.datetime, *, fn: str = "increase") -> TrafficSample:
        tx, rx = await asyncio.gather(
            self._client.instant_query(traffic_query(TRANSMIT, label_filter, window, fn=fn), at),
            self._client.instant_query(traffic_query(RECEIVE, label_filter, window, fn=fn), at),
        )
        return TrafficSample(transmitted=scalar_value(tx), received=scalar_value(rx))

    async def cycle_traffic(self, label_filter: str, window: CycleWindow, now: dt.datetime) -> TrafficSample:
        return await self.traffic(label_filter, cycle_range(window.elapsed_since_reset), now)

    async def month_traffic(self, label_filter: str, now: dt.datetime) -> TrafficSample:
        return await self.traffic(label_filter, minutes_range(elapsed(start_of_month(now), now)), now)

    async def today_traffic(self, label_filter: str, now: dt.datetime) -> TrafficSample:
        return await self.traffic(label_filter, minutes_range(elapsed(start_of_day(now), now)), now)

    async def yesterday_traffic(self, label_filter: str, now: dt.datetime) -> TrafficSample:
        today = start_of_day(now)
        start = today - ONE_DAY
        end = today - dt.timedelta(seconds=1)
        tx, rx = await asyncio.gather(
            self._client.range_query(traffic_query(TRANSMIT, label_filter, "1d"), start, end, ONE_DAY),
            self._client.range_query(traffic_query(RECEIVE, label_filter, "1d"), start, end, ONE_DAY),
        )
        return TrafficSample(transmitted=scalar_value(tx), received=scalar_value(rx))

    async def network_rate(self, label_filter: str, now: dt.datetime) -> Tuple[float, float]:
        sample = await self.traffic(label_filter, RATE_WINDOW, now, fn="rate")
        return sample.transmitted, sample.received

    async def required_value(self, expr: str, at: dt.datetime) -> float:
        return require_value(await self._client.instant_query(expr, at))

    async def uptime(self, label_filter: str, now: dt.datetime) -> Optional[dt.timedelta]:
        result = await self._client.instant_query(uptime_query(label_filter), now)
        if not isinstance(result, Vector):
            return None
        seconds = scalar_value(result)
        if math.isnan(seconds):
            return None
        return dt.timedelta(seconds=int(seconds))

    def _resource_jobs(
        self, label_filter: str, cpu_window: str, now: dt.datetime, *, with_totals: bool = True
    ) -> Dict[str, Awaitable[float]]:
        jobs = {
            "cpu": self.required_value(cpu_query(label_filter, cpu_window), now),
            "memory": self.required_value(memory_query(label_filter), now),
            "disk": self.required_value(disk_query(label_filter), now),
        }
        if not with_totals:
            return jobs
        fs = (ROOTFS_EXCLUDED, REAL_FILESYSTEMS)
        jobs.update({
            "memory_total": self.required_value(selector("node_memory_MemTotal_bytes", label_filter), now),
            "memory_available": self.required_value(selector("node_memory_MemAvailable_bytes", label_filter), now),
            "disk_total": self.required_value(selector("node_filesystem_size_bytes", label_filter, *fs), now),
            "disk_available": self.required_value(selector("node_filesystem_avail_bytes", label_filter, *fs), now),
        })
        return jobs

    @staticmethod
    def _snapshot(results: Mapping[str, Any]) -> ResourceSnapshot:
        return ResourceSnapshot(
            cpu_percent=results.get("cpu", 0.0),
            mem_percent=results.get("memory", 0.0),
            disk_percent=results.get("disk", 0.0),
            mem_total=results.get("memory_total", 0.0),
            mem_available=results.get("memory_available", 0.0),
            disk_total=results.get("disk_total", 0.0),
            disk_available=results.get("disk_available", 0.0),
        )

    def _collect_errors(self, subject: str, failures: Mapping[str, BaseException]) -> List[FieldError]:
        errors = []
        for name, exc in failures.items():
            err = _field_error(name, exc)
            logger.warning("Degraded field %s for %s (%s): %s", name, subject, err.kind, err.message)
            errors.append(err)
        return errors

    # Reports ---------------------------------------------------------------
    async def build_instance_report(
        self, labels: Mapping[str, str], now: dt.datetime
    ) -> Tuple[InstanceReport, List[FieldError]]:
        """Assemble the per-host report.

        An unparsable expiry/reset date raises InvalidDate and a failed cycle
        traffic fetch raises QueryFailed; every other sub-query degrades to a
        zero value plus a FieldError.
        """
        window = compute_cycle_window(anchor_date(labels), now)
        expiry = (labels.get("expiry") or "").strip()
        remaining = time_left(expiry, now) if expiry else None

        label_filter = self.label_filter(labels)
        cycle_window = cycle_range(window.elapsed_since_reset)
        jobs: Dict[str, Awaitable[Any]] = {
            "cycle_traffic": self.cycle_traffic(label_filter, window, now),
            "month_traffic": self.month_traffic(label_filter, now),
            "yesterday_traffic": self.yesterday_traffic(label_filter, now),
            "today_traffic": self.today_traffic(label_filter, now),
            "network_rate": self.network_rate(label_filter, now),
            "uptime": self.uptime(label_filter, now),
        }
        jobs.update(self._resource_jobs(label_filter, cycle_window, now))

        results, failures = await self._run_fields(jobs)
        subject = labels.get("instance", "?")
        critical = failures.pop("cycle_traffic", None)
        if critical is not None:
            if isinstance(critical, QueryFailed):
                raise critical
            raise QueryFailed(f"cycle traffic for {subject}: {_field_error('cycle_traffic', critical).message}") from critical

        upload, download = results.get("network_rate", (0.0, 0.0))
        report = InstanceReport(
            labels=dict(labels),
            window=window,
            time_left=remaining,
            cycle_traffic=results["cycle_traffic"],
            month_traffic=results.get("month_traffic", TrafficSample()),
            yesterday_traffic=results.get("yesterday_traffic", TrafficSample()),
            today_traffic=results.get("today_traffic", TrafficSample()),
            upload_bps=upload,
            download_bps=download,
            resources=self._snapshot(results),
            uptime=results.get("uptime"),
        )
        return report, self._collect_errors(subject, failures)

    async def fleet_rankings(self, now: dt.datetime) -> Tuple[Dict[str, Optional[FleetRanking]], List[FieldError]]:
        """Top instance per metric across the fleet, keyed by ranking name.

        Failed rankings are reported as `rank_<name>` field errors.
        """
        today = minutes_range(elapsed(start_of_day(now), now))
        month = minutes_range(elapsed(start_of_month(now), now))
        yesterday_end = start_of_day(now) - dt.timedelta(seconds=1)
        yesterday_start = start_of_day(now) - ONE_DAY

        async def instant(expr: str) -> Dict[str, float]:
            return values_by_label(await self._client.instant_query(expr, now))

        async def yesterday(counter: str) -> Dict[str, float]:
            result = await self._client.range_query(
                _by_instance_traffic(counter, "1d"), yesterday_start, yesterday_end, ONE_DAY
            )
            return values_by_label(result)

        fs = f"{ROOTFS_EXCLUDED},{REAL_FILESYSTEMS}"
        jobs: Dict[str, Awaitable[Any]] = {
            "cpu": instant(
                f'avg by (instance) (rate(node_cpu_seconds_total{{mode!="idle"}}[{FLEET_CPU_WINDOW}])) * 100'
            ),
            "memory": instant(
                "(1 - avg by (instance) (node_memory_MemAvailable_bytes)"
                " / avg by (instance) (node_memory_MemTotal_bytes)) * 100"
            ),
            "disk": instant(
                f"(1 - sum by (instance) (node_filesystem_avail_bytes{{{fs}}})"
                f" / sum by (instance) (node_filesystem_size_bytes{{{fs}}})) * 100"
            ),
            "upload_rate": instant(_by_instance_traffic(TRANSMIT, RATE_WINDOW, fn="rate")),
            "download_rate": instant(_by_instance_traffic(RECEIVE, RATE_WINDOW, fn="rate")),
            "today_upload": instant(_by_instance_traffic(TRANSMIT, today)),
            "today_download": instant(_by_instance_traffic(RECEIVE, today)),
            "month_upload": instant(_by_instance_traffic(TRANSMIT, month)),
            "month_download": instant(_by_instance_traffic(RECEIVE, month)),
            "yesterday_upload": yesterday(TRANSMIT),
            "yesterday_download": yesterday(RECEIVE),
            "all_time_upload": instant(f"sum by (instance) ({selector(TRANSMIT, DEVICE_MATCHER)})"),
            "all_time_download": instant(f"sum by (instance) ({selector(RECEIVE, DEVICE_MATCHER)})"),
        }
        results, failures = await self._run_fields(jobs)

        rankings: Dict[str, Optional[FleetRanking]] = {name: None for name in jobs}
        for name, values in results.items():
            rankings[name] = top_instance(values)
        for period in ("today", "yesterday", "month", "all_time"):
            up = results.get(f"{period}_upload")
            down = results.get(f"{period}_download")
            if up is None or down is None:
                rankings[f"{period}_total"] = None
                continue
            totals = {k: up.get(k, 0.0) + down.get(k, 0.0) for k in set(up) | set(down)}
            rankings[f"{period}_total"] = top_instance(totals)
        # Kept apart from the fleet-wide fields of the same name
        failures = {f"rank_{name}": exc for name, exc in failures.items()}
        return rankings, self._collect_errors("fleet rankings", failures)

    async def fleet_overview(self, now: dt.datetime) -> Tuple[FleetOverview, List[FieldError]]:
        jobs: Dict[str, Awaitable[Any]] = {
            "instances": self.instance_states(now),
            "yesterday_traffic": self.yesterday_traffic("", now),
            "today_traffic": self.today_traffic("", now),
            "month_traffic": self.month_traffic("", now),
            "network_rate": self.network_rate("", now),
        }
        jobs.update(self._resource_jobs("", FLEET_CPU_WINDOW, now, with_totals=False))

        (results, failures), (rankings, ranking_errors) = await asyncio.gather(
            self._run_fields(jobs), self.fleet_rankings(now)
        )
        states = results.get("instances", [])
        online = sum(1 for _, is_up in states if is_up)
        upload, download = results.get("network_rate", (0.0, 0.0))
        overview = FleetOverview(
            total_instances=len(states),
            online_instances=online,
            offline_instances=len(states) - online,
            yesterday_traffic=results.get("yesterday_traffic", TrafficSample()),
            today_traffic=results.get("today_traffic", TrafficSample()),
            month_traffic=results.get("month_traffic", TrafficSample()),
            upload_bps=upload,
            download_bps=download,
            resources=self._snapshot(results),
            rankings=rankings,
        )
        return overview, self._collect_errors("fleet", failures) + ranking_errors

    async def daily_traffic(self, labels: Mapping[str, str], now: dt.datetime) -> List[Tuple[dt.date, TrafficSample]]:
        """Per-day traffic since the last reset, one point per calendar day."""
        window = compute_cycle_window(anchor_date(labels), now)
        label_filter = self.label_filter(labels)
        start = window.last_reset_at + ONE_DAY
        end = start_of_day(now) + ONE_DAY
        tx, rx = await asyncio.gather(
            self._client.range_query(traffic_query(TRANSMIT, label_filter, "1d"), start, end, ONE_DAY),
            self._client.range_query(traffic_query(RECEIVE, label_filter, "1d"), start, end, ONE_DAY),
        )

        def by_day(result: Any) -> Dict[dt.date, float]:
            if not isinstance(result, Matrix):
                return {}
            out: Dict[dt.date, float] = {}
            for ts, value in result.series[0].values:
                day = (dt.datetime.fromtimestamp(ts, tz=now.tzinfo) - ONE_DAY).date()
                out[day] = value
            return out

        sent, recv = by_day(tx), by_day(rx)
        days = []
        d = window.last_reset_at.date()
        while d <= now.date():
            days.append((d, TrafficSample(transmitted=sent.get(d, 0.0), received=recv.get(d, 0.0))))
            d += ONE_DAY
        return days

    # Instances -------------------------------------------------------------
    async def list_instances(self, now: Optional[dt.datetime] = None) -> List[Dict[str, str]]:
        return await self._client.fetch_label_sets(self._instances_query, now)

    async def instance_states(self, now: Optional[dt.datetime] = None) -> List[Tuple[Dict[str, str], bool]]:
        """Label sets of the monitored hosts with their `up` state."""
        result = await self._client.instant_query(self._instances_query, now)
        if not isinstance(result, Vector):
            return []
        states = [(s.metric, s.value == 1) for s in result.samples]
        states.sort(key=lambda item: item[0].get("instance", ""))
        return states

    async def find_instance(self, name: str, now: Optional[dt.datetime] = None) -> Optional[Dict[str, str]]:
        for labels in await self.list_instances(now):
            if labels.get("instance") == name:
                return labels
        return None
