"""
Geographic anomaly detection

Keeps only the most recent observed location per IP and flags a jump larger
than the configured distance inside the configured window. Lookups that fail
or time out contribute nothing.
"""

import asyncio
import ipaddress
import json
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

import geoip2.database
import geoip2.errors

from pitchguard.core.config import GateConfig
from pitchguard.core.events import SecurityEventType, Severity
from pitchguard.core.logging import get_logger
from pitchguard.core.store import KeyNamespace, StateStore
from pitchguard.services.event_log import SecurityEventLog
from pitchguard.utils.exceptions import ConfigurationError, StoreUnavailable

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    country: Optional[str] = None


@dataclass(frozen=True)
class GeoRecord:
    latitude: float
    longitude: float
    observed_at: float

    def to_json(self) -> str:
        return json.dumps({"lat": self.latitude, "lon": self.longitude, "observed_at": self.observed_at})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["GeoRecord"]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return cls(float(data["lat"]), float(data["lon"]), float(data["observed_at"]))
        except (TypeError, ValueError, KeyError):
            return None


def great_circle_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometres"""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class GeoLocator(ABC):
    """IP geolocation collaborator"""

    @abstractmethod
    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        """Return the location of ``ip`` or None when it cannot be resolved"""

    def close(self) -> None:
        pass


class NullGeoLocator(GeoLocator):
    """Used when no geolocation database is configured"""

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        return None


class GeoIP2Locator(GeoLocator):
    """MaxMind city database lookups"""

    def __init__(self, database_path: str):
        try:
            self.reader = geoip2.database.Reader(database_path)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot open GeoIP database {database_path}: {e}") from e
        logger.info("GeoIP database loaded", path=database_path)

    def _lookup_sync(self, ip: str) -> Optional[GeoLocation]:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return None
        if address.is_private or address.is_loopback:
            return None
        try:
            response = self.reader.city(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        if response.location.latitude is None or response.location.longitude is None:
            return None
        return GeoLocation(
            latitude=response.location.latitude,
            longitude=response.location.longitude,
            country=response.country.iso_code,
        )

    async def lookup(self, ip: str) -> Optional[GeoLocation]:
        return await asyncio.to_thread(self._lookup_sync, ip)

    def close(self) -> None:
        self.reader.close()


def build_geo_locator(settings) -> GeoLocator:
    if settings.GATE_GEOIP_DATABASE_PATH:
        return GeoIP2Locator(settings.GATE_GEOIP_DATABASE_PATH)
    logger.info("No GeoIP database configured, geographic anomaly signal disabled")
    return NullGeoLocator()


class NetworkRangeMatcher:
    """Membership test against a configured list of CIDR ranges.

    Best-effort VPN/proxy signal: it is exactly as accurate as the list it
    is given, and an empty list means the signal is absent.
    """

    def __init__(self, ranges: Iterable[str] = ()):
        networks: List = []
        for cidr in ranges:
            try:
                networks.append(ipaddress.ip_network(cidr, strict=False))
            except ValueError as e:
                raise ConfigurationError(f"Invalid network range {cidr!r}: {e}") from e
        self.networks = tuple(networks)

    def __bool__(self) -> bool:
        return bool(self.networks)

    def matches(self, ip: str) -> bool:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(address.version == net.version and address in net for net in self.networks)


class GeoAnomalyDetector:
    """Large-jump detection over the last known location of each IP"""

    def __init__(
        self,
        store: StateStore,
        locator: GeoLocator,
        config: GateConfig,
        event_log: Optional[SecurityEventLog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.locator = locator
        self.config = config
        self.event_log = event_log
        self.clock = clock
        self.vpn_ranges = NetworkRangeMatcher(config.vpn_ranges)

    async def _lookup(self, ip: str) -> Optional[GeoLocation]:
        try:
            return await asyncio.wait_for(self.locator.lookup(ip), timeout=self.config.geo_lookup_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Geolocation lookup timed out for {ip}")
            return None
        except Exception as e:
            logger.warning(f"Geolocation lookup failed for {ip}: {e}")
            return None

    async def score(self, ip: str) -> int:
        location = await self._lookup(ip)
        if location is None:
            return 0

        key = KeyNamespace.GEO.key(ip)
        now = self.clock()
        penalty = 0
        try:
            previous = GeoRecord.from_json(await self.store.get(key))
        except StoreUnavailable as e:
            logger.warning(f"Error reading last location: {e}")
            return 0

        if previous is not None and now - previous.observed_at < self.config.geo_anomaly_window_seconds:
            distance = great_circle_km(previous.latitude, previous.longitude, location.latitude, location.longitude)
            if distance > self.config.geo_anomaly_distance_km:
                penalty = self.config.geo_anomaly_weight
                if self.event_log is not None:
                    await self.event_log.emit(
                        SecurityEventType.GEO_ANOMALY,
                        Severity.MEDIUM,
                        ip=ip,
                        distance_km=round(distance, 1),
                        elapsed_seconds=round(now - previous.observed_at, 1),
                        country=location.country,
                    )

        # Last write wins; only the latest observation is kept
        current = GeoRecord(location.latitude, location.longitude, now)
        try:
            await self.store.set(key, current.to_json(), ttl=self.config.geo_anomaly_window_seconds)
        except StoreUnavailable as e:
            logger.warning(f"Error storing location: {e}")
        return penalty

    def vpn_score(self, ip: str) -> int:
        if self.vpn_ranges and self.vpn_ranges.matches(ip):
            return self.config.vpn_range_weight
        return 0
