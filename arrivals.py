# Prediction normalization and per-stop arrival grouping.

import datetime
from dataclasses import dataclass, field
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

log = logging.getLogger("bustime_proxy.arrivals")

JsonDict = Dict[str, Any]

DEFAULT_TIMEZONE = "America/Los_Angeles"

STOP_DISPLAY_NAMES: Dict[str, str] = {
    "1839": "SAC West Bus Stop",
    "1840": "SAC East Bus Stop",
}

DUE_TOKEN = "DUE"
UNKNOWN_DESTINATION = "Unknown"

_TIMESTAMP_RE = re.compile(
    r"^\s*(\d{4})(\d{2})(\d{2})[ T]?(\d{2}):?(\d{2})(?::?(\d{2}))?\s*$"
)
_VIA_RE = re.compile(r"\s+via\b.*$", re.IGNORECASE)
_DANGLING_RE = re.compile(r"^[\s\-–—,;:/]+|[\s\-–—,;:/]+$")
_SPACES_RE = re.compile(r"\s{2,}")


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# Bustime wall-clock in tz -> UTC; ambiguous fall-back times take the first occurrence.
def parse_bustime_timestamp(value: Any, tz: datetime.tzinfo) -> Optional[datetime.datetime]:
    if not isinstance(value, str):
        return None
    match = _TIMESTAMP_RE.match(value)
    if match is None:
        return None
    year, month, day, hour, minute, second = (int(part) if part else 0 for part in match.groups())
    try:
        local = datetime.datetime(year, month, day, hour, minute, second, tzinfo=tz)
        return local.astimezone(datetime.timezone.utc)
    except (ValueError, OverflowError):
        return None


def to_iso(instant: Optional[datetime.datetime]) -> Optional[str]:
    if instant is None:
        return None
    return instant.astimezone(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


def timestamp_to_iso(value: Any, tz: datetime.tzinfo) -> Optional[str]:
    return to_iso(parse_bustime_timestamp(value, tz))


def parse_countdown(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float, str)):
        return None
    try:
        number = float(value.strip() if isinstance(value, str) else value)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def format_local_time(instant: Optional[datetime.datetime], tz: datetime.tzinfo) -> Optional[str]:
    if instant is None:
        return None
    local = instant.astimezone(tz)
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{local.hour % 12 or 12}:{local.minute:02d} {suffix}"


def clean_destination(
    headsign: Any,
    direction: Any,
    stop_names: Iterable[str] = (),
) -> str:
    # Falls back to the untouched text when cleaning leaves nothing.
    original = _text(headsign) or _text(direction)
    if original is None:
        return UNKNOWN_DESTINATION

    cleaned = _VIA_RE.sub("", original)
    for name in stop_names:
        if name:
            cleaned = re.sub(re.escape(name), "", cleaned, flags=re.IGNORECASE)
    cleaned = _DANGLING_RE.sub("", cleaned)
    cleaned = _SPACES_RE.sub(" ", cleaned).strip()
    return cleaned or original


@dataclass
class NormalizedPrediction:
    timestamp: Optional[str]
    predicted_arrival: Optional[str]
    countdown: Optional[float]
    route: Optional[str]
    stop_id: Optional[str]
    stop_name: Optional[str]
    destination: str
    raw: JsonDict = field(default_factory=dict)
    timestamp_at: Optional[datetime.datetime] = field(default=None, repr=False)
    arrival_at: Optional[datetime.datetime] = field(default=None, repr=False)

    def to_dict(self) -> JsonDict:
        return {
            "timestamp": self.timestamp,
            "predictedArrival": self.predicted_arrival,
            "countdown": self.countdown,
            "route": self.route,
            "stopId": self.stop_id,
            "stopName": self.stop_name,
            "destination": self.destination,
            "raw": self.raw,
        }


def normalize_prediction(
    raw: Mapping[str, Any],
    tz: datetime.tzinfo,
    stop_names: Iterable[str] = (),
) -> NormalizedPrediction:
    timestamp_at = parse_bustime_timestamp(raw.get("tmstmp"), tz)
    arrival_at = parse_bustime_timestamp(raw.get("prdtm"), tz)
    return NormalizedPrediction(
        timestamp=to_iso(timestamp_at),
        predicted_arrival=to_iso(arrival_at),
        countdown=parse_countdown(raw.get("prdctdn")),
        route=_text(raw.get("rt")),
        stop_id=_text(raw.get("stpid")),
        stop_name=_text(raw.get("stpnm")),
        destination=clean_destination(raw.get("des"), raw.get("rtdir"), stop_names),
        raw=dict(raw),
        timestamp_at=timestamp_at,
        arrival_at=arrival_at,
    )


def normalize_predictions(
    records: Iterable[Any],
    tz: datetime.tzinfo,
    stop_names: Iterable[str] = (),
) -> List[NormalizedPrediction]:
    names = list(stop_names)
    out: List[NormalizedPrediction] = []
    for record in records:
        if not isinstance(record, Mapping):
            log.debug("Skipping non-object prediction record: %r", record)
            continue
        out.append(normalize_prediction(record, tz, names))
    return out


def resolve_countdown(prediction: NormalizedPrediction) -> Optional[float]:
    if prediction.countdown is not None:
        return prediction.countdown
    if prediction.timestamp_at is None or prediction.arrival_at is None:
        return None

    seconds = (prediction.arrival_at - prediction.timestamp_at).total_seconds()
    minutes = math.floor(seconds / 60 + 0.5)

    raw_countdown = prediction.raw.get("prdctdn")
    if isinstance(raw_countdown, str) and raw_countdown.strip().upper() == DUE_TOKEN and minutes < 1:
        return 0
    return minutes


def arrival_sort_key(prediction: NormalizedPrediction) -> Tuple[int, float]:
    if prediction.arrival_at is None:
        return (1, 0.0)
    return (0, prediction.arrival_at.timestamp())


def render_arrival(prediction: NormalizedPrediction, tz: datetime.tzinfo) -> JsonDict:
    return {
        "route": prediction.route,
        "destination": prediction.destination,
        "minutes": resolve_countdown(prediction),
        "arrivalTime": format_local_time(prediction.arrival_at, tz),
        "predictedArrival": prediction.predicted_arrival,
    }


def group_predictions(
    predictions: Iterable[NormalizedPrediction],
    stop_names: Mapping[str, str],
    tz: datetime.tzinfo,
) -> Dict[str, JsonDict]:
    buckets: Dict[str, List[NormalizedPrediction]] = {}
    for prediction in predictions:
        name = stop_names.get(prediction.stop_id or "")
        if name is None:
            log.debug("Dropping prediction for unsupported stop %s", prediction.stop_id)
            continue
        buckets.setdefault(name, []).append(prediction)

    grouped: Dict[str, JsonDict] = {}
    for name, bucket in buckets.items():
        bucket.sort(key=arrival_sort_key)
        entries = [render_arrival(p, tz) for p in bucket]
        grouped[name] = {
            "stopId": bucket[0].stop_id,
            "nextArrival": entries[0],
            "upcomingRoutes": entries[1:],
        }
    return grouped
