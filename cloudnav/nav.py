#!/usr/bin/env python3
"""
A single-file personal link organizer.

Public bookmark listing plus a password-gated JSON admin API.  Everything
(settings, groups, sections, links) lives in *one* JSON document stored
under a single key of a key/value store.
"""

import hashlib
import ipaddress
import json
import os
import re
import secrets
import socket
import sqlite3
import uuid
from html import unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import monotonic, sleep, time
from typing import Annotated, Literal
from urllib.parse import quote, urljoin, urlparse

import boto3
import click
import requests
from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, g, jsonify, request
from itsdangerous import BadData, URLSafeSerializer
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)
from urllib3.exceptions import HTTPError as TransportError
from urllib3.exceptions import ReadTimeoutError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "cloudnav.sqlite3"
ENV_FILE = ROOT / ".env"

DATA_KEY = "cloudnav:data"
LOGIN_FAIL_PREFIX = "loginfail:"

SESSION_COOKIE = "cloudnav_session"
SESSION_DAYS = 7
SESSION_SUBJECT = "admin"

BACKOFF_BASE_MS = 700
BACKOFF_CAP_MS = 8000

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_ENDPOINT",
    "R2_PREFIX",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)

DEFAULT_SETTINGS = {
    "siteTitle": "CloudNav",
    "siteSubtitle": "Personal navigation",
    "homeTagline": "Everything you visit, one page away.",
    "siteIconDataUrl": "",
    "faviconDataUrl": "",
    "siteIconFit": "contain",
}
SETTINGS_TEXT_KEYS = ("siteTitle", "siteSubtitle", "homeTagline")
SETTINGS_IMAGE_KEYS = ("siteIconDataUrl", "faviconDataUrl")
ICON_FITS = ("contain", "cover")
UNTITLED = "Untitled"

NO_STORE = "no-store"
PUBLIC_CACHE = "public, max-age=60, s-maxage=300, stale-while-revalidate=86400"
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

FETCH_MAX_BYTES = 96 * 1024
FETCH_CHUNK = 8192
FETCH_MAX_REDIRECTS = 5
FETCH_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en;q=0.9,*;q=0.5",
}
HTML_MIMES = ("text/html", "application/xhtml+xml")

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
_CHARSET_RE = re.compile(r"charset=[\"']?([\w.:-]+)", re.I)
_OG_TITLE_RES = (
    re.compile(
        r"<meta[^>]+property=[\"']og:title[\"'][^>]+content=[\"']([^\"']+)[\"'][^>]*>",
        re.I,
    ),
    re.compile(
        r"<meta[^>]+content=[\"']([^\"']+)[\"'][^>]+property=[\"']og:title[\"'][^>]*>",
        re.I,
    ),
)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.I | re.S)
_WS_RE = re.compile(r"\s+")

try:
    __version__ = version("cloudnav")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


###############################################################################
# Configuration
###############################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_value(key: str, default: str = "") -> str:
    """Process env first, then the .env file next to this module."""
    val = os.environ.get(key)
    if val is None:
        val = _read_env_file().get(key, default)
    return val.strip()


def env_number(key: str, default, cast=int):
    """Numeric env value; a blank or malformed one falls back to *default*."""
    try:
        return cast(env_value(key) or default)
    except ValueError:
        return default


def r2_config() -> dict[str, str]:
    env_file = _read_env_file()
    cfg = {k: (os.environ.get(k) or env_file.get(k) or "").strip() for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.json.sort_keys = False
app.config.update(
    PASSWORD=env_value("PASSWORD"),
    SESSION_SECRET=env_value("SESSION_SECRET"),
    USE_FAVICON_SERVICE=env_value("USE_FAVICON_SERVICE").lower() == "true",
    STORE_BACKEND=env_value("STORE_BACKEND", "sqlite").lower() or "sqlite",
    DATABASE=env_value("DATABASE") or str(DB_FILE),
    LOGIN_FAIL_TTL=env_number("LOGIN_FAIL_TTL", 86400),
    FETCH_TIMEOUT=env_number("FETCH_TIMEOUT", 15.0, float),
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


###############################################################################
# Errors
###############################################################################
class ApiError(Exception):
    """An error that maps 1:1 onto a JSON response."""

    def __init__(self, code: int, message: str, **extra):
        super().__init__(message)
        self.status = code
        self.message = message
        self.extra = extra


class StorageError(Exception):
    pass


@app.errorhandler(ApiError)
def handle_api_error(exc: ApiError):
    return jsonify(error=exc.message, **exc.extra), exc.status


@app.errorhandler(StorageError)
def handle_storage_error(exc: StorageError):
    app.logger.error("Storage backend failed: %s", exc, exc_info=exc)
    return jsonify(error="Storage unavailable"), 503


@app.errorhandler(404)
@app.errorhandler(405)
def not_found(exc):
    """Unknown route *or* known route with the wrong verb."""
    return jsonify(error="Not Found"), 404


@app.errorhandler(500)
def internal_error(exc):
    """Flask has already logged the traceback by the time we get here."""
    return jsonify(error="Internal Server Error"), 500


@app.errorhandler(HTTPException)
def http_error(exc: HTTPException):
    return jsonify(error=exc.name), exc.code


###############################################################################
# Key/value storage
###############################################################################
class SqliteKV:
    """Key/value pairs in one SQLite table; rows may carry an expiry."""

    def __init__(self, path: str):
        self.db = sqlite3.connect(path)
        self.db.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key        TEXT PRIMARY KEY,
                value      TEXT NOT NULL,
                expires_at REAL
            )
            """
        )
        self.db.commit()

    def get(self, key: str) -> str | None:
        row = self.db.execute(
            "SELECT value, expires_at FROM kv WHERE key=?", (key,)
        ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if expires_at is not None and expires_at <= time():
            self.delete(key)
            return None
        return value

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = time() + ttl if ttl else None
        self.db.execute(
            "INSERT INTO kv (key, value, expires_at) VALUES (?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
            "expires_at=excluded.expires_at",
            (key, value, expires_at),
        )
        self.db.commit()

    def delete(self, key: str) -> None:
        self.db.execute("DELETE FROM kv WHERE key=?", (key,))
        self.db.commit()

    def close(self) -> None:
        self.db.close()


def _expired(expires_at: str | None) -> bool:
    """Metadata that is missing or unreadable means no expiry."""
    try:
        return bool(expires_at) and float(expires_at) <= time()
    except ValueError:
        return False


class R2KV:
    """
    Key/value pairs as objects in an R2 (S3-compatible) bucket.

    Expiry is kept in the object metadata and enforced on read; the bucket
    lifecycle rules may clean up stale objects on their own schedule.
    """

    def __init__(self, client, bucket: str, prefix: str = ""):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> str | None:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                return None
            raise StorageError(f"R2 get {key!r} failed") from exc
        except BotoCoreError as exc:
            raise StorageError(f"R2 get {key!r} failed") from exc

        body = obj["Body"]
        try:
            if _expired((obj.get("Metadata") or {}).get("expires-at")):
                self.delete(key)
                return None
            return body.read().decode("utf-8")
        except BotoCoreError as exc:
            raise StorageError(f"R2 get {key!r} failed") from exc
        finally:
            body.close()

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        metadata = {"expires-at": str(time() + ttl)} if ttl else {}
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self._key(key),
                Body=value.encode("utf-8"),
                ContentType="application/json",
                Metadata=metadata,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"R2 put {key!r} failed") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(key))
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"R2 delete {key!r} failed") from exc

    def close(self) -> None:
        pass


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def get_kv():
    """One store handle per app context, closed on teardown."""
    if "kv" not in g:
        backend = app.config.get("STORE_BACKEND", "sqlite")
        if backend == "r2":
            cfg = r2_config()
            if not r2_is_configured(cfg):
                raise StorageError("STORE_BACKEND=r2 but R2 is not configured")
            g.kv = R2KV(_r2_client(cfg), cfg["R2_BUCKET"], cfg.get("R2_PREFIX", ""))
        elif backend == "sqlite":
            g.kv = SqliteKV(app.config["DATABASE"])
        else:
            raise StorageError(f"Unknown STORE_BACKEND {backend!r}")
    return g.kv


@app.teardown_appcontext
def close_kv(error=None):
    kv = g.pop("kv", None)
    if kv is not None:
        kv.close()


###############################################################################
# Normalizer
###############################################################################
def _clean_str(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _dicts(value) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, dict)]


def _as_order(value, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return fallback


def _by_order(items: list[dict]) -> list[dict]:
    # sorted() is stable: equal orders keep their relative position
    return sorted(items, key=lambda it: it["order"])


def normalize_settings(raw) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    out = {}
    for key in SETTINGS_TEXT_KEYS:
        out[key] = _clean_str(raw.get(key)) or DEFAULT_SETTINGS[key]
    for key in SETTINGS_IMAGE_KEYS:
        out[key] = _clean_str(raw.get(key))
    fit = _clean_str(raw.get("siteIconFit"))
    out["siteIconFit"] = fit if fit in ICON_FITS else DEFAULT_SETTINGS["siteIconFit"]
    return out


def normalize_document(raw) -> dict:
    """
    Repair *anything* into a canonical document.

    • missing arrays → [] and missing settings → defaults
    • entries without an id, or pointing at a group that does not exist, go
    • a link's sectionId survives only if the section lives in the same group
    • lists are sorted stably by `order`

    Never raises; normalize(normalize(x)) == normalize(x).
    """
    raw = raw if isinstance(raw, dict) else {}

    groups, group_ids = [], set()
    for pos, item in enumerate(_dicts(raw.get("groups"))):
        gid = _clean_str(item.get("id"))
        if not gid or gid in group_ids:
            continue
        group_ids.add(gid)
        enabled = item.get("enabled")
        groups.append(
            {
                "id": gid,
                "name": _clean_str(item.get("name")) or UNTITLED,
                "order": _as_order(item.get("order"), pos),
                "enabled": enabled if isinstance(enabled, bool) else True,
            }
        )

    sections, section_group = [], {}
    for pos, item in enumerate(_dicts(raw.get("sections"))):
        sid = _clean_str(item.get("id"))
        gid = _clean_str(item.get("groupId"))
        if not sid or sid in section_group or gid not in group_ids:
            continue
        section_group[sid] = gid
        sections.append(
            {
                "id": sid,
                "groupId": gid,
                "name": _clean_str(item.get("name")) or UNTITLED,
                "order": _as_order(item.get("order"), pos),
            }
        )

    links, link_ids = [], set()
    for pos, item in enumerate(_dicts(raw.get("links"))):
        lid = _clean_str(item.get("id"))
        gid = _clean_str(item.get("groupId"))
        url = _clean_str(item.get("url"))
        if not lid or lid in link_ids or gid not in group_ids or not url:
            continue
        link_ids.add(lid)
        link = {"id": lid, "groupId": gid}
        sid = _clean_str(item.get("sectionId"))
        if sid and section_group.get(sid) == gid:
            link["sectionId"] = sid
        link["title"] = _clean_str(item.get("title")) or url
        link["url"] = url
        for key in ("icon", "description"):
            val = _clean_str(item.get(key))
            if val:
                link[key] = val
        link["order"] = _as_order(item.get("order"), pos)
        links.append(link)

    return {
        "settings": normalize_settings(raw.get("settings")),
        "groups": _by_order(groups),
        "sections": _by_order(sections),
        "links": _by_order(links),
    }


###############################################################################
# Document store
###############################################################################
class DocumentStore:
    """load → mutate → normalize → save; last write wins."""

    def __init__(self, kv):
        self.kv = kv

    def load(self) -> dict:
        raw = self.kv.get(DATA_KEY)
        if raw is None:
            return normalize_document(None)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("Stored document is not valid JSON – starting empty")
            data = None
        return normalize_document(data)

    def save(self, doc: dict) -> None:
        self.kv.put(
            DATA_KEY, json.dumps(doc, separators=(",", ":"), ensure_ascii=False)
        )


def get_store() -> DocumentStore:
    return DocumentStore(get_kv())


def save_document(store: DocumentStore, doc: dict) -> dict:
    doc = normalize_document(doc)
    store.save(doc)
    return doc


###############################################################################
# Document helpers
###############################################################################
def new_id() -> str:
    return str(uuid.uuid4())


def next_order(items) -> int:
    orders = [it["order"] for it in items]
    return max(orders) + 1 if orders else 0


def find_by_id(items: list[dict], item_id: str) -> dict | None:
    return next((it for it in items if it["id"] == item_id), None)


def index_of(items: list[dict], item_id: str) -> int:
    return next((i for i, it in enumerate(items) if it["id"] == item_id), -1)


def has_group(doc: dict, group_id: str | None) -> bool:
    return bool(group_id) and any(grp["id"] == group_id for grp in doc["groups"])


def section_in_group(doc: dict, section_id: str | None, group_id: str) -> bool:
    return bool(section_id) and any(
        s["id"] == section_id and s["groupId"] == group_id for s in doc["sections"]
    )


def bucket_links(
    doc: dict, group_id: str, section_id: str | None, *, exclude: str | None = None
) -> list[dict]:
    """Links that share the (groupId, sectionId) bucket."""
    return [
        lnk
        for lnk in doc["links"]
        if lnk["groupId"] == group_id
        and lnk.get("sectionId") == section_id
        and lnk["id"] != exclude
    ]


def normalize_http_url(value: str) -> str:
    v = value.strip()
    if v and not _SCHEME_RE.match(v):
        return f"https://{v}"
    return v


def favicon_url(site_url: str, use_service: bool = False) -> str:
    parsed = urlparse(normalize_http_url(site_url))
    host = parsed.hostname or ""
    if use_service:
        return f"https://www.google.com/s2/favicons?domain={quote(host)}&sz=64"
    try:
        port = f":{parsed.port}" if parsed.port else ""
    except ValueError:
        port = ""
    if ":" in host:
        host = f"[{host}]"
    return f"{parsed.scheme}://{host}{port}/favicon.ico"


def default_icon(site_url: str) -> str:
    return favicon_url(site_url, bool(app.config.get("USE_FAVICON_SERVICE")))


###############################################################################
# Request schemas
###############################################################################
def _http_url(value: str) -> str:
    v = normalize_http_url(value)
    try:
        parsed = urlparse(v)
        parsed.port  # raises on a malformed port
    except ValueError:
        raise ValueError("URL must be http/https") from None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        raise ValueError("URL must be http/https")
    return v


def _icon_url(value: str) -> str:
    if not value:
        return ""
    try:
        return _http_url(value)
    except ValueError:
        raise ValueError("Icon URL must be http/https") from None


def _image_ref(value: str) -> str:
    if not value:
        return value
    if value.startswith("data:"):
        if not value.startswith("data:image/"):
            raise ValueError("Image must be data:image/... or http/https URL")
        return value
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Image must be data:image/... or http/https URL")
    return value


def _text(min_length: int = 0, max_length: int | None = None):
    return StringConstraints(
        strict=True,
        strip_whitespace=True,
        min_length=min_length,
        max_length=max_length,
    )


Id = Annotated[str, StringConstraints(strict=True, min_length=1)]
OptionalRef = Annotated[str, _text()]
HttpUrl = Annotated[str, _text(1), AfterValidator(_http_url)]
IconUrl = Annotated[str, _text(0, 512), AfterValidator(_icon_url)]
ImageRef = Annotated[str, _text(0, 360000), AfterValidator(_image_ref)]
Order = Annotated[int, Field(strict=True, ge=0)]


class Schema(BaseModel):
    model_config = ConfigDict(strict=True)


class Patch(Schema):
    @model_validator(mode="after")
    def not_empty(self):
        if not self.model_fields_set:
            raise ValueError("Empty patch")
        return self


class CreateGroupBody(Schema):
    name: Annotated[str, _text(1, 64)]


class UpdateGroupBody(Patch):
    name: Annotated[str, _text(1, 64)] | None = None
    enabled: bool | None = None


class CreateSectionBody(Schema):
    groupId: Id
    name: Annotated[str, _text(1, 60)]


class UpdateSectionBody(Patch):
    name: Annotated[str, _text(1, 60)] | None = None
    order: Order | None = None


class CreateLinkBody(Schema):
    groupId: Id
    sectionId: Annotated[str, _text(1)] | None = None
    title: Annotated[str, _text(1, 80)]
    url: HttpUrl
    description: Annotated[str, _text(0, 200)] | None = None
    icon: IconUrl | None = None


class UpdateLinkBody(Patch):
    groupId: Id | None = None
    sectionId: OptionalRef | None = None
    title: Annotated[str, _text(1, 80)] | None = None
    url: HttpUrl | None = None
    description: Annotated[str, _text(0, 200)] | None = None
    icon: IconUrl | None = None


class OrderEntry(Schema):
    id: Id
    order: Order


class LinkOrderEntry(OrderEntry):
    groupId: Id | None = None
    sectionId: OptionalRef | None = None


class ReorderBody(Schema):
    groups: list[OrderEntry] | None = None
    sections: list[OrderEntry] | None = None
    links: list[LinkOrderEntry] | None = None


class SettingsPatch(Schema):
    siteTitle: Annotated[str, _text(1, 40)] | None = None
    siteSubtitle: Annotated[str, _text(1, 60)] | None = None
    homeTagline: Annotated[str, _text(1, 120)] | None = None
    siteIconDataUrl: ImageRef | None = None
    faviconDataUrl: ImageRef | None = None
    siteIconFit: Literal["contain", "cover"] | None = None


class FetchTitleBody(Schema):
    url: HttpUrl


def parse_body(schema: type[Schema]):
    """Validate the raw request body against *schema* or raise a 400."""
    try:
        return schema.model_validate_json(request.get_data() or b"")
    except ValidationError as exc:
        details = [
            {"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()
        ]
        raise ApiError(400, "Invalid request body", details=details) from None


def json_object() -> dict:
    body = request.get_json(silent=True, force=True)
    if not isinstance(body, dict):
        raise ApiError(400, "Invalid JSON body")
    return body


###############################################################################
# Authentication
###############################################################################
def client_ip() -> str:
    """The peer ProxyFix trusted; X-Forwarded-For entries left of it are ignored."""
    return request.remote_addr or "unknown"


def missing_password() -> bool:
    return not (app.config.get("PASSWORD") or "").strip()


def session_secret() -> str:
    secret = (app.config.get("SESSION_SECRET") or "").strip()
    if secret:
        return secret
    password = (app.config.get("PASSWORD") or "").strip()
    return hashlib.sha256(f"cloudnav-session:{password}".encode()).hexdigest()


def _serializer(secret: str) -> URLSafeSerializer:
    return URLSafeSerializer(
        secret,
        salt="cloudnav-session",
        signer_kwargs={"digest_method": hashlib.sha256},
    )


def sign_session(payload: dict, secret: str) -> str:
    return _serializer(secret).dumps(payload)


def verify_session(token: str, secret: str) -> dict | None:
    """
    • Signature check (forged / tampered ➜ None)
    • `exp` must lie in the future (expired ➜ None)
    """
    try:
        payload = _serializer(secret).loads(token)
    except BadData:
        return None
    if not isinstance(payload, dict):
        return None
    exp = payload.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int) or exp <= int(time()):
        return None
    return payload


def current_session() -> dict | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token or missing_password():
        return None
    return verify_session(token, session_secret())


def require_auth() -> dict:
    if missing_password():
        raise ApiError(503, "Server misconfigured: missing PASSWORD")
    payload = current_session()
    if payload is None:
        raise ApiError(401, "Unauthorized")
    return payload


def backoff_seconds(fails: int) -> float:
    """Penalty applied before checking the password again."""
    if fails <= 0:
        return 0.0
    return min(BACKOFF_CAP_MS, BACKOFF_BASE_MS + BACKOFF_BASE_MS * fails) / 1000


def login_failures(ip: str, *, kv) -> int:
    raw = kv.get(LOGIN_FAIL_PREFIX + ip)
    if not raw:
        return 0
    try:
        fails = json.loads(raw).get("fails", 0)
    except (json.JSONDecodeError, AttributeError):
        return 0
    return fails if isinstance(fails, int) and fails > 0 else 0


def record_login_failure(ip: str, fails: int, *, kv) -> None:
    kv.put(
        LOGIN_FAIL_PREFIX + ip,
        json.dumps({"fails": fails, "last": int(time() * 1000)}),
        ttl=int(app.config.get("LOGIN_FAIL_TTL", 86400)),
    )


def clear_login_failures(ip: str, *, kv) -> None:
    kv.delete(LOGIN_FAIL_PREFIX + ip)


def _set_session_cookie(resp, token: str, *, max_age: int) -> None:
    resp.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="Lax",
        secure=request.is_secure,
    )


def _clear_session_cookie(resp) -> None:
    resp.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        samesite="Lax",
        secure=request.is_secure,
    )


@app.before_request
def admin_gate():
    if request.path.startswith("/api/admin/"):
        require_auth()


@app.after_request
def sec_headers(resp):
    resp.headers.setdefault("Cache-Control", NO_STORE)
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


@app.route("/api/login", methods=["POST"])
def login():
    password = (app.config.get("PASSWORD") or "").strip()
    if not password:
        raise ApiError(503, "Server misconfigured: missing PASSWORD")

    kv = get_kv()
    ip = client_ip()
    fails = login_failures(ip, kv=kv)
    if fails:
        sleep(backoff_seconds(fails))

    provided = json_object().get("password")
    provided = provided.strip() if isinstance(provided, str) else ""
    if not provided:
        raise ApiError(400, "Missing password")

    if not secrets.compare_digest(provided.encode(), password.encode()):
        record_login_failure(ip, fails + 1, kv=kv)
        app.logger.warning("Failed login from %s (%d in a row)", ip, fails + 1)
        raise ApiError(401, "Invalid password")

    clear_login_failures(ip, kv=kv)
    now = int(time())
    exp = now + SESSION_DAYS * 24 * 60 * 60
    token = sign_session({"sub": SESSION_SUBJECT, "iat": now, "exp": exp}, session_secret())
    app.logger.info("Admin login from %s", ip)

    resp = jsonify(ok=True)
    _set_session_cookie(resp, token, max_age=exp - now)
    return resp


@app.route("/api/logout", methods=["POST"])
def logout():
    resp = jsonify(ok=True)
    _clear_session_cookie(resp)
    return resp


@app.route("/api/me")
def me():
    token = request.cookies.get(SESSION_COOKIE)
    if not token or missing_password():
        return {"authed": False}
    if verify_session(token, session_secret()):
        return {"authed": True}
    # stale or forged cookie ➜ drop it
    resp = jsonify(authed=False)
    _clear_session_cookie(resp)
    return resp


###############################################################################
# Public
###############################################################################
@app.route("/api/links")
def public_links():
    resp = jsonify(get_store().load())
    resp.headers["Cache-Control"] = PUBLIC_CACHE
    return resp


@app.route("/api/debug/env")
def debug_env():
    host = urlparse(f"//{request.host}").hostname or ""
    if host not in LOCAL_HOSTS:
        raise ApiError(404, "Not Found")
    return {
        "hasPassword": not missing_password(),
        "hasSecret": bool((app.config.get("SESSION_SECRET") or "").strip()),
        "version": __version__,
    }


###############################################################################
# Admin – groups
###############################################################################
@app.route("/api/admin/groups", methods=["POST"])
def create_group():
    body = parse_body(CreateGroupBody)
    store = get_store()
    doc = store.load()
    group = {
        "id": new_id(),
        "name": body.name,
        "order": next_order(doc["groups"]),
        "enabled": True,
    }
    doc["groups"].append(group)
    doc = save_document(store, doc)
    return {"ok": True, "group": find_by_id(doc["groups"], group["id"])}


@app.route("/api/admin/groups/<group_id>", methods=["PUT"])
def update_group(group_id):
    body = parse_body(UpdateGroupBody)
    store = get_store()
    doc = store.load()
    group = find_by_id(doc["groups"], group_id)
    if group is None:
        raise ApiError(404, "Group not found")
    if body.name is not None:
        group["name"] = body.name
    if body.enabled is not None:
        group["enabled"] = body.enabled
    doc = save_document(store, doc)
    return {"ok": True, "group": find_by_id(doc["groups"], group_id)}


@app.route("/api/admin/groups/<group_id>", methods=["DELETE"])
def delete_group(group_id):
    store = get_store()
    doc = store.load()
    if find_by_id(doc["groups"], group_id) is None:
        raise ApiError(404, "Group not found")
    doc["groups"] = [grp for grp in doc["groups"] if grp["id"] != group_id]
    doc["sections"] = [s for s in doc["sections"] if s["groupId"] != group_id]
    doc["links"] = [lnk for lnk in doc["links"] if lnk["groupId"] != group_id]
    save_document(store, doc)
    app.logger.info("Deleted group %s", group_id)
    return {"ok": True}


###############################################################################
# Admin – sections
###############################################################################
@app.route("/api/admin/sections", methods=["POST"])
def create_section():
    body = parse_body(CreateSectionBody)
    store = get_store()
    doc = store.load()
    if not has_group(doc, body.groupId):
        raise ApiError(404, "Group not found")
    siblings = [s for s in doc["sections"] if s["groupId"] == body.groupId]
    section = {
        "id": new_id(),
        "groupId": body.groupId,
        "name": body.name,
        "order": next_order(siblings),
    }
    doc["sections"].append(section)
    doc = save_document(store, doc)
    return {"ok": True, "section": find_by_id(doc["sections"], section["id"])}


@app.route("/api/admin/sections/<section_id>", methods=["PUT"])
def update_section(section_id):
    body = parse_body(UpdateSectionBody)
    store = get_store()
    doc = store.load()
    section = find_by_id(doc["sections"], section_id)
    if section is None:
        raise ApiError(404, "Section not found")
    if body.name is not None:
        section["name"] = body.name
    if body.order is not None:
        section["order"] = body.order
    doc = save_document(store, doc)
    return {"ok": True, "section": find_by_id(doc["sections"], section_id)}


@app.route("/api/admin/sections/<section_id>", methods=["DELETE"])
def delete_section(section_id):
    store = get_store()
    doc = store.load()
    if find_by_id(doc["sections"], section_id) is None:
        raise ApiError(404, "Section not found")
    doc["sections"] = [s for s in doc["sections"] if s["id"] != section_id]
    for lnk in doc["links"]:
        if lnk.get("sectionId") == section_id:
            del lnk["sectionId"]
    save_document(store, doc)
    app.logger.info("Deleted section %s", section_id)
    return {"ok": True}


###############################################################################
# Admin – links
###############################################################################
@app.route("/api/admin/links", methods=["POST"])
def create_link():
    body = parse_body(CreateLinkBody)
    store = get_store()
    doc = store.load()
    if not has_group(doc, body.groupId):
        raise ApiError(404, "Group not found")

    section_id = (
        body.sectionId if section_in_group(doc, body.sectionId, body.groupId) else None
    )
    link = {"id": new_id(), "groupId": body.groupId}
    if section_id:
        link["sectionId"] = section_id
    link["title"] = body.title
    link["url"] = body.url
    link["icon"] = body.icon or default_icon(body.url)
    if body.description:
        link["description"] = body.description
    link["order"] = next_order(bucket_links(doc, body.groupId, section_id))

    doc["links"].append(link)
    doc = save_document(store, doc)
    return {"ok": True, "link": find_by_id(doc["links"], link["id"])}


@app.route("/api/admin/links/<link_id>", methods=["PUT"])
def update_link(link_id):
    body = parse_body(UpdateLinkBody)
    sent = body.model_fields_set
    store = get_store()
    doc = store.load()
    idx = index_of(doc["links"], link_id)
    if idx < 0:
        raise ApiError(404, "Link not found")
    current = doc["links"][idx]

    group_id = body.groupId or current["groupId"]
    if not has_group(doc, group_id):
        raise ApiError(404, "Group not found")

    # absent ➜ keep; null / "" ➜ unassigned
    wanted = body.sectionId if "sectionId" in sent else current.get("sectionId")
    section_id = wanted if section_in_group(doc, wanted, group_id) else None

    url = body.url or current["url"]
    if body.icon is None:
        icon = current.get("icon")
    else:
        icon = body.icon or default_icon(url)

    if body.description is None:
        description = current.get("description")
    else:
        description = body.description or None

    moved = (group_id, section_id) != (current["groupId"], current.get("sectionId"))
    order = (
        next_order(bucket_links(doc, group_id, section_id, exclude=link_id))
        if moved
        else current["order"]
    )

    link = {"id": link_id, "groupId": group_id}
    if section_id:
        link["sectionId"] = section_id
    link["title"] = body.title or current["title"]
    link["url"] = url
    if icon:
        link["icon"] = icon
    if description:
        link["description"] = description
    link["order"] = order

    doc["links"][idx] = link
    doc = save_document(store, doc)
    return {"ok": True, "link": find_by_id(doc["links"], link_id)}


@app.route("/api/admin/links/<link_id>", methods=["DELETE"])
def delete_link(link_id):
    store = get_store()
    doc = store.load()
    if find_by_id(doc["links"], link_id) is None:
        raise ApiError(404, "Link not found")
    doc["links"] = [lnk for lnk in doc["links"] if lnk["id"] != link_id]
    save_document(store, doc)
    return {"ok": True}


###############################################################################
# Admin – reorder
###############################################################################
def apply_reorder(doc: dict, body: ReorderBody) -> dict:
    """
    Apply every (id, order) patch – and link bucket moves – to *doc* in
    memory.  Unknown ids are ignored; a move into a missing group aborts
    the whole batch before anything is touched.
    """
    for entry in body.links or ():
        if entry.groupId is not None and not has_group(doc, entry.groupId):
            raise ApiError(404, "Group not found")

    for entry in body.groups or ():
        group = find_by_id(doc["groups"], entry.id)
        if group is not None:
            group["order"] = entry.order

    for entry in body.sections or ():
        section = find_by_id(doc["sections"], entry.id)
        if section is not None:
            section["order"] = entry.order

    for entry in body.links or ():
        link = find_by_id(doc["links"], entry.id)
        if link is None:
            continue
        group_id = entry.groupId or link["groupId"]
        if "sectionId" in entry.model_fields_set:
            wanted = entry.sectionId
        elif group_id == link["groupId"]:
            wanted = link.get("sectionId")
        else:
            wanted = None
        link["groupId"] = group_id
        if section_in_group(doc, wanted, group_id):
            link["sectionId"] = wanted
        else:
            link.pop("sectionId", None)
        link["order"] = entry.order
    return doc


@app.route("/api/admin/reorder", methods=["POST"])
def reorder():
    body = parse_body(ReorderBody)
    store = get_store()
    doc = apply_reorder(store.load(), body)
    save_document(store, doc)
    return {"ok": True}


###############################################################################
# Admin – settings + legacy save
###############################################################################
@app.route("/api/admin/settings", methods=["GET"])
def get_settings():
    return {"settings": get_store().load()["settings"]}


@app.route("/api/admin/settings", methods=["PUT"])
def put_settings():
    body = parse_body(SettingsPatch)
    store = get_store()
    doc = store.load()
    patch = body.model_dump(exclude_none=True)
    doc["settings"] = normalize_settings({**doc["settings"], **patch})
    doc = save_document(store, doc)
    return {"ok": True, "settings": doc["settings"]}


@app.route("/api/admin/save", methods=["POST"])
def legacy_save():
    """Whole-document save used by older admin clients."""
    body = json_object()
    if not isinstance(body.get("groups"), list) or not isinstance(
        body.get("links"), list
    ):
        raise ApiError(400, "Invalid data")
    store = get_store()
    existing = store.load()
    merged = {
        **existing,
        **body,
        "settings": body.get("settings") or existing["settings"],
        "sections": (
            body["sections"]
            if isinstance(body.get("sections"), list)
            else existing["sections"]
        ),
    }
    doc = save_document(store, merged)
    app.logger.info(
        "Legacy save: %d groups, %d links", len(doc["groups"]), len(doc["links"])
    )
    return {"ok": True}


###############################################################################
# Title fetcher
###############################################################################
_BAD_NETS = [
    ipaddress.ip_network(n)
    for n in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "224.0.0.0/4",
        "240.0.0.0/4",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
        "ff00::/8",
    )
]


def is_ip_hostname(host: str) -> bool:
    host = host.strip().lower()
    if not host:
        return False
    if ":" in host:  # IPv6 literal
        return True
    if _IPV4_RE.match(host):
        return True
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def is_private_hostname(host: str) -> bool:
    """Names that obviously point inside: localhost, *.local, empty."""
    host = host.strip().lower().rstrip(".")
    if not host or host == "localhost":
        return True
    return host.endswith((".localhost", ".local", ".internal"))


def _resolves_private(host: str) -> bool:
    """True ⇢ *host* resolves **only** to private / reserved addresses."""
    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError):
        return False  # unresolvable ⇒ the fetch itself will fail

    for _fam, *_rest, sockaddr in infos:
        try:
            ip_obj = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if not any(ip_obj in net for net in _BAD_NETS):
            return False  # at least one public address
    return True


def guard_fetch_target(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ApiError(400, "URL must be http/https")
    if parsed.username or parsed.password:
        raise ApiError(400, "Blocked URL credentials")
    host = parsed.hostname or ""
    if is_ip_hostname(host):
        raise ApiError(400, "Blocked IP host")
    if is_private_hostname(host) or _resolves_private(host):
        app.logger.warning("Blocked title fetch for %s", host)
        raise ApiError(400, "Blocked URL host")


def _clean_title(raw: str) -> str | None:
    cleaned = _WS_RE.sub(" ", unescape(raw)).strip()
    return cleaned or None


def extract_og_title(html: str) -> str | None:
    for regex in _OG_TITLE_RES:
        m = regex.search(html)
        if m:
            title = _clean_title(m.group(1))
            if title:
                return title
    return None


def extract_html_title(html: str) -> str | None:
    m = _TITLE_RE.search(html)
    return _clean_title(m.group(1)) if m else None


def _charset(content_type: str) -> str:
    m = _CHARSET_RE.search(content_type)
    return m.group(1) if m else "utf-8"


def _read_some(resp, amt: int, remaining: float) -> bytes:
    """Whatever the next socket read yields, waiting *remaining* seconds at most."""
    sock = getattr(getattr(resp.raw, "connection", None), "sock", None)
    if sock is not None:
        sock.settimeout(remaining)
    return resp.raw.read1(amt, decode_content=True)


def read_text_up_to(resp, limit: int, deadline: float) -> str:
    """
    Read at most *limit* body bytes before *deadline* (a monotonic time).

    The clock is checked between socket reads rather than between full
    chunks, so a body that trickles in byte by byte still hits the deadline.
    """
    raw = b""
    while len(raw) < limit:
        remaining = deadline - monotonic()
        if remaining <= 0:
            raise ApiError(504, "Fetch timeout")
        try:
            chunk = _read_some(resp, min(FETCH_CHUNK, limit - len(raw)), remaining)
        except (ReadTimeoutError, TimeoutError):
            raise ApiError(504, "Fetch timeout") from None
        except (TransportError, OSError) as exc:
            app.logger.warning("Reading %s failed: %s", resp.url, exc)
            raise ApiError(502, "Failed to fetch title") from None
        if not chunk:
            break
        raw += chunk
    try:
        return raw.decode(_charset(resp.headers.get("Content-Type", "")), "replace")
    except LookupError:
        return raw.decode("utf-8", "replace")


def _title_from_response(resp, deadline: float) -> str:
    if not resp.ok:
        raise ApiError(
            502, f"Upstream returned {resp.status_code}", status=resp.status_code
        )
    ctype = (resp.headers.get("Content-Type") or "").lower()
    if not any(mime in ctype for mime in HTML_MIMES):
        raise ApiError(415, "Unsupported Content-Type", status=415)

    html = read_text_up_to(resp, FETCH_MAX_BYTES, deadline)
    title = extract_og_title(html) or extract_html_title(html)
    if not title:
        raise ApiError(422, "Title not found")
    return title


def fetch_title(url: str, *, timeout: float = 15.0) -> str:
    """
    Fetch *url* and return its og:title (or <title>).

    • every hop – including redirects – passes `guard_fetch_target`
    • hard wall-clock deadline of *timeout* seconds
    • at most FETCH_MAX_BYTES of the body are read
    """
    deadline = monotonic() + timeout
    target = url
    for _hop in range(FETCH_MAX_REDIRECTS + 1):
        guard_fetch_target(target)
        remaining = deadline - monotonic()
        if remaining <= 0:
            raise ApiError(504, "Fetch timeout")
        try:
            with requests.get(
                target,
                timeout=(min(5.0, remaining), remaining),
                stream=True,
                allow_redirects=False,
                headers=FETCH_HEADERS,
            ) as resp:
                if resp.is_redirect:
                    target = urljoin(target, resp.headers.get("Location", ""))
                    continue
                return _title_from_response(resp, deadline)
        except requests.Timeout:
            raise ApiError(504, "Fetch timeout") from None
        except requests.RequestException as exc:
            app.logger.warning("Title fetch for %s failed: %s", target, exc)
            raise ApiError(502, "Failed to fetch title") from None
    raise ApiError(502, "Too many redirects")


@app.route("/api/admin/fetch-title", methods=["POST"])
def fetch_title_route():
    body = parse_body(FetchTitleBody)
    title = fetch_title(body.url, timeout=float(app.config.get("FETCH_TIMEOUT", 15)))
    return {"title": title}


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the storage and an empty document (no-op if one exists)."""
    kv = get_kv()
    if kv.get(DATA_KEY) is not None:
        click.echo("Document already present – nothing to do.")
        return
    DocumentStore(kv).save(normalize_document(None))
    click.secho("✅  Empty document created.", fg="green")


@app.cli.command("export")
@click.argument("path", required=False, type=click.Path(dir_okay=False, path_type=Path))
def cli_export(path: Path | None):
    """Dump the normalized document as JSON (stdout without PATH)."""
    text = json.dumps(get_store().load(), indent=2, ensure_ascii=False)
    if path is None:
        click.echo(text)
    else:
        path.write_text(text + "\n", encoding="utf-8")
        click.echo(f"Wrote {path}")


@app.cli.command("import")
@click.argument(
    "path", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def cli_import(path: Path):
    """Replace the stored document with PATH (normalized first)."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from None
    doc = save_document(get_store(), raw)
    click.secho(
        f"✅  Imported {len(doc['groups'])} groups, {len(doc['sections'])} sections, "
        f"{len(doc['links'])} links.",
        fg="green",
    )


@app.cli.command("unlock")
@click.argument("ip")
def cli_unlock(ip: str):
    """Forget the failed-login counter for IP."""
    clear_login_failures(ip, kv=get_kv())
    click.echo(f"Login backoff cleared for {ip}")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
