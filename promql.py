from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class QueryFailed(Exception):
    """The backend rejected a query or answered with something unusable."""


class BackendUnavailable(QueryFailed):
    """The backend could not be reached in time."""


class NoData(Exception):
    """A query that must produce a value returned no series."""


# -----------------------------
# Result variants
# -----------------------------
@dataclass(frozen=True)
class Sample:
    metric: Dict[str, str]
    value: float


@dataclass(frozen=True)
class Series:
    metric: Dict[str, str]
    values: List[Tuple[float, float]] = field(default_factory=list)


@dataclass(frozen=True)
class Vector:
    samples: List[Sample]


@dataclass(frozen=True)
class Matrix:
    series: List[Series]


@dataclass(frozen=True)
class Empty:
    result_type: str = ""


QueryResult = Union[Vector, Matrix, Empty]


def _to_float(raw: Any) -> float:
    # Prometheus encodes sample values as strings ("1.5", "NaN", "+Inf")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise QueryFailed(f"invalid sample value {raw!r}") from None


def _point(raw: Any) -> Tuple[float, float]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise QueryFailed(f"invalid sample {raw!r}")
    return _to_float(raw[0]), _to_float(raw[1])


def _items(result: Any) -> List[Dict[str, Any]]:
    if result is None:
        return []
    if not isinstance(result, list) or not all(isinstance(item, dict) for item in result):
        raise QueryFailed(f"malformed result {result!r}")
    return result


def _labels(item: Dict[str, Any]) -> Dict[str, str]:
    metric = item.get("metric") or {}
    if not isinstance(metric, dict):
        raise QueryFailed(f"malformed metric {metric!r}")
    return dict(metric)


def parse_result(data: Dict[str, Any]) -> QueryResult:
    """Map the `data` member of a Prometheus API response to a result variant."""
    result_type = data.get("resultType")
    result = data.get("result")

    if result_type == "vector":
        samples = [Sample(metric=_labels(item), value=_point(item.get("value"))[1]) for item in _items(result)]
        return Vector(samples) if samples else Empty(result_type)
    if result_type == "matrix":
        series = []
        for item in _items(result):
            values = item.get("values") or []
            if not isinstance(values, list):
                raise QueryFailed(f"malformed values {values!r}")
            series.append(Series(metric=_labels(item), values=[_point(v) for v in values]))
        series = [s for s in series if s.values]
        return Matrix(series) if series else Empty(result_type)
    if result_type == "scalar":
        if not result:
            return Empty(result_type)
        return Vector([Sample(metric={}, value=_point(result)[1])])
    if result_type == "string":
        return Empty(result_type)
    raise QueryFailed(f"unknown resultType {result_type!r}")


def scalar_value(result: QueryResult) -> float:
    """First sample of a vector, last point of the first matrix series, 0.0 when empty."""
    if isinstance(result, Vector):
        return result.samples[0].value
    if isinstance(result, Matrix):
        return result.series[0].values[-1][1]
    return 0.0


def require_value(result: QueryResult) -> float:
    if isinstance(result, Empty):
        raise NoData("query returned no series")
    return scalar_value(result)


def values_by_label(result: QueryResult, label: str = "instance") -> Dict[str, float]:
    """Collect one value per label value; matrices contribute their last point."""
    values: Dict[str, float] = {}
    if isinstance(result, Vector):
        for s in result.samples:
            values[s.metric.get(label, "")] = s.value
    elif isinstance(result, Matrix):
        for series in result.series:
            values[series.metric.get(label, "")] = series.values[-1][1]
    return values


def _timestamp(ts: dt.datetime) -> str:
    return f"{ts.timestamp():.3f}"


# -----------------------------
# Prometheus HTTP API client (async)
# -----------------------------
class PromClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PromClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base}{path}"
        try:
            r = await self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"timeout querying {params.get('query')!r}") from e
        except httpx.TransportError as e:
            raise BackendUnavailable(f"cannot reach {self._base}: {e}") from e
        except httpx.HTTPError as e:
            raise QueryFailed(f"request for {params.get('query')!r} failed: {e}") from e
        try:
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.debug("Prometheus error %s: params=%s response=%s", e.response.status_code, params, e.response.text)
            raise QueryFailed(f"HTTP {e.response.status_code} for {params.get('query')!r}") from e

        try:
            payload = r.json()
        except ValueError as e:
            raise QueryFailed(f"non-JSON response for {params.get('query')!r}") from e
        if not isinstance(payload, dict) or payload.get("status") != "success":
            error = payload.get("error") if isinstance(payload, dict) else None
            raise QueryFailed(f"query {params.get('query')!r} failed: {error or payload!r}")
        warnings = payload.get("warnings")
        if warnings:
            logger.warning("Prometheus warnings for %s: %s", params.get("query"), warnings)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise QueryFailed(f"missing data for {params.get('query')!r}")
        return data

    async def instant_query(self, expr: str, at: Optional[dt.datetime] = None) -> QueryResult:
        """GET /api/v1/query"""
        params: Dict[str, Any] = {"query": expr}
        if at is not None:
            params["time"] = _timestamp(at)
        return parse_result(await self._get("/api/v1/query", params))

    async def range_query(
        self,
        expr: str,
        start: dt.datetime,
        end: dt.datetime,
        step: dt.timedelta,
    ) -> QueryResult:
        """GET /api/v1/query_range"""
        params = {
            "query": expr,
            "start": _timestamp(start),
            "end": _timestamp(end),
            "step": f"{int(step.total_seconds())}s",
        }
        return parse_result(await self._get("/api/v1/query_range", params))

    async def fetch_label_sets(self, expr: str, at: Optional[dt.datetime] = None) -> List[Dict[str, str]]:
        result = await self.instant_query(expr, at)
        if isinstance(result, Vector):
            return [s.metric for s in result.samples]
        if isinstance(result, Matrix):
            return [s.metric for s in result.series]
        return []
