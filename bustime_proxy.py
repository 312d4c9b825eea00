#!/usr/bin/env python3
# Bustime proxy for the arrivals board.

from dataclasses import dataclass, field
import datetime
import logging
import os
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests

from arrivals import (
    DEFAULT_TIMEZONE,
    STOP_DISPLAY_NAMES,
    group_predictions,
    normalize_predictions,
)

load_dotenv()

log = logging.getLogger("bustime_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

JsonDict = Dict[str, Any]

ENVELOPE_KEY = "bustime-response"
DEFAULT_CORS_ORIGINS = "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000"


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def env_timezone(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown timezone %r in %s, using %s", value, name, default)
        return default
    return value


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class BustimeConfig:
    api_key: Optional[str]
    base_url: Optional[str]
    timeout_sec: float = 10.0
    timezone: str = DEFAULT_TIMEZONE
    stops: Mapping[str, str] = field(default_factory=lambda: dict(STOP_DISPLAY_NAMES))
    cors_allowed_origins: FrozenSet[str] = frozenset()
    enable_hsts: bool = False
    hsts_max_age_sec: int = 15552000

    @classmethod
    def from_env(cls) -> "BustimeConfig":
        origins = set(env_csv("CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS))
        if env_bool("CORS_ALLOW_NULL_ORIGIN", False):
            origins.add("null")
        return cls(
            api_key=os.getenv("BUSTIME_API_KEY") or os.getenv("API_KEY"),
            base_url=os.getenv("BUSTIME_BASE_URL") or os.getenv("BASE_URL"),
            timeout_sec=env_float("BUSTIME_TIMEOUT_SEC", 10.0),
            timezone=env_timezone("BUSTIME_TIMEZONE", DEFAULT_TIMEZONE),
            cors_allowed_origins=frozenset(origins),
            enable_hsts=env_bool("ENABLE_HSTS", False),
            hsts_max_age_sec=env_int("HSTS_MAX_AGE_SEC", 15552000),
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class UpstreamError(Exception):
    def __init__(self, status: int, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.detail = detail


class UpstreamDomainError(Exception):
    def __init__(self, message: str, detail: Any = None):
        super().__init__(message)
        self.detail = detail


class MissingConfig(Exception):
    def __init__(self, message: str):
        super().__init__(message)


def envelope_error_message(errors: Any) -> str:
    if isinstance(errors, Mapping):
        errors = [errors]
    if not isinstance(errors, list):
        return str(errors)
    messages = [str(e.get("msg")) for e in errors if isinstance(e, Mapping) and e.get("msg")]
    return "; ".join(messages) or "Bustime reported an error"


# Missing envelope or field is "no data"; an error with no data raises.
def unwrap_envelope(data: Any, field_name: str) -> List[JsonDict]:
    envelope = data.get(ENVELOPE_KEY) if isinstance(data, Mapping) else None
    if not isinstance(envelope, Mapping):
        return []

    items = envelope.get(field_name)
    errors = envelope.get("error")
    if errors and not items:
        raise UpstreamDomainError(envelope_error_message(errors), errors)
    if errors:
        log.warning("Bustime partial error for %s: %s", field_name, envelope_error_message(errors))

    if isinstance(items, Mapping):
        return [dict(items)]
    if isinstance(items, list):
        return [item for item in items if isinstance(item, Mapping)]
    return []


class BustimeClient:
    def __init__(self, config: BustimeConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session if session is not None else requests.Session()

    def request_json(self, endpoint: str, params: Optional[Dict[str, str]] = None) -> Any:
        if not self.config.api_key or not self.config.base_url:
            raise MissingConfig("Bustime API key or base URL not set")

        url = f"{self.config.base_url.rstrip('/')}/{endpoint}"
        query: Dict[str, str] = {"key": self.config.api_key, "format": "json"}
        if params:
            query.update(params)

        try:
            resp = self.session.get(
                url,
                params=query,
                timeout=self.config.timeout_sec,
                headers={"Accept": "application/json"},
            )
        except requests.RequestException as exc:
            # The exception text carries the full URL, API key included.
            raise UpstreamError(504, f"Bustime {endpoint} request failed", type(exc).__name__) from exc

        if resp.status_code >= 400:
            raise UpstreamError(
                resp.status_code, f"Bustime {endpoint} upstream error", f"HTTP {resp.status_code}"
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(502, f"Bustime {endpoint} invalid JSON", "invalid JSON") from exc

    def get_routes(self) -> List[JsonDict]:
        return unwrap_envelope(self.request_json("getroutes"), "routes")

    def get_directions(self, route: str) -> List[JsonDict]:
        return unwrap_envelope(self.request_json("getdirections", {"rt": route}), "directions")

    def get_stops(self, route: str, direction: str) -> List[JsonDict]:
        data = self.request_json("getstops", {"rt": route, "dir": direction})
        return unwrap_envelope(data, "stops")

    def get_predictions(
        self,
        stop_ids: Sequence[str],
        routes: Sequence[str] = (),
        top: Optional[int] = None,
    ) -> List[JsonDict]:
        params = {"stpid": ",".join(stop_ids)}
        if routes:
            params["rt"] = ",".join(routes)
        if top is not None:
            params["top"] = str(top)
        return unwrap_envelope(self.request_json("getpredictions", params), "prd")

    def get_all_stops(self) -> List[JsonDict]:
        all_stops: List[JsonDict] = []
        routes = self.get_routes()
        for route in routes:
            rt = route.get("rt")
            if not rt:
                continue
            for direction in self.get_directions(str(rt)):
                # v3 names the field "id", v2 only has "dir".
                dir_id = direction.get("id") or direction.get("dir")
                if not dir_id:
                    continue
                all_stops.extend(self.get_stops(str(rt), str(dir_id)))
        log.info("Aggregated %d stops across %d routes", len(all_stops), len(routes))
        return all_stops


def error_response(
    status: int,
    code: str,
    message: str,
    *,
    detail: Any = None,
) -> Response:
    payload: Dict[str, Any] = {
        "ok": False,
        "error": message,
        "code": code,
        "fetched_at": utc_now_iso(),
    }
    if detail is not None:
        payload["detail"] = detail
    resp = jsonify(payload)
    resp.status_code = status
    resp.headers["Cache-Control"] = "no-store"
    return resp


def is_valid_id(value: str) -> bool:
    return 0 < len(value) <= 32 and all(ch.isalnum() or ch in "-_" for ch in value)


def parse_csv_param(name: str) -> List[str]:
    value = request.args.get(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def create_app(
    config: Optional[BustimeConfig] = None,
    client: Optional[BustimeClient] = None,
) -> Flask:
    config = config if config is not None else BustimeConfig.from_env()
    client = client if client is not None else BustimeClient(config)

    app = Flask(__name__)

    @app.after_request
    def add_common_headers(resp: Response) -> Response:
        origin = request.headers.get("Origin")
        if origin and origin in config.cors_allowed_origins:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Vary"] = "Origin"
            resp.headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
            resp.headers["Access-Control-Max-Age"] = "600"

        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")

        if config.enable_hsts and request.is_secure:
            resp.headers.setdefault(
                "Strict-Transport-Security",
                f"max-age={config.hsts_max_age_sec}; includeSubDomains",
            )
        return resp

    @app.route("/allstops", methods=["GET", "OPTIONS"])
    def all_stops() -> Response:
        if request.method == "OPTIONS":
            return make_response("", 204)

        try:
            stops = client.get_all_stops()
        except MissingConfig as exc:
            return error_response(500, "missing_credentials", str(exc))
        except UpstreamDomainError as exc:
            log.warning("Stop aggregation rejected upstream: %s", exc)
            return error_response(502, "upstream_domain_error", str(exc), detail=exc.detail)
        except UpstreamError as exc:
            log.warning("Stop aggregation failed: %s (%s)", exc, exc.detail)
            return error_response(502, "upstream_error", "Upstream error", detail=str(exc))
        except Exception:
            log.exception("Unexpected error while aggregating stops")
            return error_response(500, "internal_error", "Unexpected error")

        return jsonify(stops)

    @app.route("/predictions", methods=["GET", "OPTIONS"])
    def predictions() -> Response:
        if request.method == "OPTIONS":
            return make_response("", 204)

        stop_ids = parse_csv_param("stpid")
        routes = parse_csv_param("rt")
        if not stop_ids or not all(is_valid_id(s) for s in stop_ids):
            return error_response(400, "invalid_parameter", "stpid must be a comma-separated list of stop ids")
        if not all(is_valid_id(r) for r in routes):
            return error_response(400, "invalid_parameter", "rt must be a comma-separated list of route ids")

        top: Optional[int] = None
        top_arg = request.args.get("top")
        if top_arg:
            if not (top_arg.isascii() and top_arg.isdigit()) or int(top_arg) < 1:
                return error_response(400, "invalid_parameter", "top must be a positive integer")
            top = int(top_arg)

        try:
            raw = client.get_predictions(stop_ids, routes, top)
            tz = config.tz
            grouped = group_predictions(normalize_predictions(raw, tz, config.stops.values()), config.stops, tz)
        except MissingConfig as exc:
            return error_response(500, "missing_credentials", str(exc))
        except UpstreamDomainError as exc:
            return error_response(400, "upstream_domain_error", str(exc), detail=exc.detail)
        except UpstreamError as exc:
            log.warning("Predictions request failed: %s (%s)", exc, exc.detail)
            return error_response(502, "upstream_error", "Upstream error", detail=str(exc))
        except Exception:
            log.exception("Unexpected error while fetching predictions")
            return error_response(500, "internal_error", "Unexpected error")

        return jsonify({"ok": True, "data": grouped, "fetched_at": utc_now_iso()})

    return app


app = create_app()


if __name__ == "__main__":
    app.run(host=os.getenv("APP_HOST", "127.0.0.1"), port=env_int("APP_PORT", 3000))
