"""
Data Ingestion - Telemetry Source.

============================================================
RESPONSIBILITY
============================================================
Reads the most recent telemetry point of a device from the
time-series database.

- TelemetrySource: the abstract contract the capture job uses
- InfluxTelemetrySource: InfluxDB v2 HTTP API, Flux query,
  annotated-CSV response

============================================================
DESIGN PRINCIPLES
============================================================
- At most one point per call; never a range
- No data in the window is a normal outcome (None)
- Unreachable source or malformed payload raises
  TelemetrySourceError; nothing is fabricated

============================================================
"""

import csv
import io
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx

from core.clock import from_iso8601
from core.config import TelemetryConfig
from core.constants import TELEMETRY_FIELDS
from core.exceptions import TelemetrySourceError

from .types import TelemetryPoint


# Columns of a pivoted Flux row that are not telemetry fields
FLUX_META_COLUMNS = frozenset({
    "",
    "result",
    "table",
    "_start",
    "_stop",
    "_time",
    "_measurement",
})


class TelemetrySource(ABC):
    """Contract for a source of the latest telemetry point."""

    @abstractmethod
    async def query_latest(
        self,
        device_key: str,
        fields: Sequence[str] = TELEMETRY_FIELDS,
        window: Optional[str] = None,
    ) -> Optional[TelemetryPoint]:
        """
        Get the most recent point of a device.

        Args:
            device_key: Device uid tag value
            fields: Field names to return
            window: Look-back window, e.g. "-1h"

        Returns:
            The latest point, or None if the window holds no data

        Raises:
            TelemetrySourceError: Source unreachable or payload malformed
        """


def _flux_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_latest_query(
    bucket: str,
    measurement: str,
    device_key: str,
    fields: Sequence[str],
    window: str,
) -> str:
    """Flux query for the latest pivoted point of one device."""
    lines = [
        f'from(bucket: "{_flux_string(bucket)}")',
        f"  |> range(start: {window})",
        f'  |> filter(fn: (r) => r._measurement == "{_flux_string(measurement)}")',
        f'  |> filter(fn: (r) => r["uid"] == "{_flux_string(device_key)}")',
    ]
    if fields:
        predicate = " or ".join(f'r._field == "{_flux_string(name)}"' for name in fields)
        lines.append(f"  |> filter(fn: (r) => {predicate})")
    lines.extend([
        '  |> pivot(rowKey: ["_time"], columnKey: ["_field"], valueColumn: "_value")',
        '  |> sort(columns: ["_time"], desc: true)',
        "  |> limit(n: 1)",
    ])
    return "\n".join(lines)


def _coerce(value: str) -> Any:
    if value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return value


def parse_latest_csv(device_key: str, payload: str) -> Optional[TelemetryPoint]:
    """
    Parse an InfluxDB CSV response into a TelemetryPoint.

    Annotation rows (#datatype, #group, #default) and blank
    separator lines are skipped. The first data row after the
    header is the latest point since the query sorts descending.

    Raises:
        TelemetrySourceError: No _time column, or an unparseable _time
    """
    header: Optional[List[str]] = None

    for row in csv.reader(io.StringIO(payload)):
        if not row or not any(cell.strip() for cell in row):
            continue
        if row[0].startswith("#"):
            continue
        if header is None:
            header = [cell.strip() for cell in row]
            if "_time" not in header:
                raise TelemetrySourceError(
                    "Malformed telemetry payload: no _time column",
                    device_key=device_key,
                )
            continue
        if row == header:
            continue

        record: Dict[str, str] = dict(zip(header, row))
        try:
            captured_at = from_iso8601(record["_time"])
        except (KeyError, ValueError) as e:
            raise TelemetrySourceError(
                f"Malformed telemetry payload: bad _time {record.get('_time')!r}",
                device_key=device_key,
                cause=e,
            )

        fields = {
            name: _coerce(value)
            for name, value in record.items()
            if name not in FLUX_META_COLUMNS and name != "uid"
        }
        return TelemetryPoint(device_uid=device_key, captured_at=captured_at, fields=fields)

    return None


class InfluxTelemetrySource(TelemetrySource):
    """
    InfluxDB v2 telemetry source.

    ============================================================
    WIRING
    ============================================================
    POST {url}/api/v2/query?org={org}
    Authorization: Token {token}
    Content-Type: application/vnd.flux
    Accept: application/csv

    ============================================================
    """

    def __init__(
        self,
        config: TelemetryConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Args:
            config: Telemetry connection settings
            client: Shared client; a short-lived one is opened per
                query when omitted
        """
        self._config = config
        self._client = client
        self._logger = logging.getLogger("telemetry.influx")

    @property
    def query_url(self) -> str:
        base_url = (self._config.url or "").rstrip("/")
        return f"{base_url}/api/v2/query"

    async def query_latest(
        self,
        device_key: str,
        fields: Sequence[str] = TELEMETRY_FIELDS,
        window: Optional[str] = None,
    ) -> Optional[TelemetryPoint]:
        if not self._config.is_configured:
            raise TelemetrySourceError(
                "Telemetry source is not configured (INFLUXDB_URL/TOKEN/ORG)",
                device_key=device_key,
            )

        query = build_latest_query(
            bucket=self._config.bucket,
            measurement=self._config.measurement,
            device_key=device_key,
            fields=fields,
            window=window or self._config.window,
        )
        payload = await self._post(device_key, query)
        point = parse_latest_csv(device_key, payload)

        if point is None:
            self._logger.info(f"No telemetry for device {device_key} in {window or self._config.window}")
        else:
            self._logger.debug(
                f"Telemetry for {device_key} at {point.captured_at.isoformat()}: "
                f"{len(point.fields)} fields"
            )
        return point

    async def _post(self, device_key: str, query: str) -> str:
        headers = {
            "Authorization": f"Token {self._config.token}",
            "Content-Type": "application/vnd.flux",
            "Accept": "application/csv",
        }
        params = {"org": self._config.org}

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.query_url, params=params, headers=headers, content=query
                )
            else:
                async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                    response = await client.post(
                        self.query_url, params=params, headers=headers, content=query
                    )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TelemetrySourceError(
                f"InfluxDB returned HTTP {e.response.status_code}: {e.response.text[:200]}",
                device_key=device_key,
                status_code=e.response.status_code,
                cause=e,
            )
        except httpx.HTTPError as e:
            raise TelemetrySourceError(
                f"InfluxDB unreachable: {e}",
                device_key=device_key,
                cause=e,
            )

        return response.text


__all__ = [
    "TelemetrySource",
    "InfluxTelemetrySource",
    "build_latest_query",
    "parse_latest_csv",
]
