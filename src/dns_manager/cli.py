#!/usr/bin/env python3
"""dns-manager - Cloudflare A-record activation manager

Keeps the A records of a Cloudflare zone in line with a locally declared
desired state. The desired state lives in one JSON document per environment
("servers.<env>.json"); every write to it is preceded by a timestamped backup
so any change can be rolled back.

Reconciliation works on (name, address) keys: records the operator wants
active but Cloudflare does not have are created, records Cloudflare has but
the operator no longer wants are deleted, and everything else is left alone.

Environment variables:

    Credentials (used when --config is not given):
        CF_API_TOKEN           Cloudflare API token (bearer)
        CF_ZONE_ID             Cloudflare zone identifier
        DNS_NAME               Domain managed in the zone (e.g. xmr.example.com)

        Fallback file: <DATA_DIR>/credentials.<env>.yaml
            token: "..."
            zone_id: "..."
            domain: "xmr.example.com"

    Storage:
        DNS_ENVIRONMENT        Environment name, e.g. "test" or "production" (default: test)
        DATA_DIR               Directory holding servers.<env>.json (default: .)
        BACKUP_DIR             Directory for backups (default: next to the document)
        KEEP_BACKUPS           Number of backups to keep, 0 = unlimited (default: 10)

    Remote:
        CF_API_URL             Cloudflare API base URL (default: https://api.cloudflare.com/client/v4)
        REQUEST_TIMEOUT_SECONDS  Per-request timeout (default: 30)
        SETTLE_SECONDS         Delay before verifying a create/delete (default: 2)

    Vocabularies:
        DEFAULT_ACCOUNT_TAGS   Comma-separated account tags for new documents
        DEFAULT_CONTAINER_TAGS Comma-separated container tags for new documents

    Logging:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        LOG_DIR                If set, also log to a daily-rotated file in this directory
"""

from __future__ import annotations

import argparse
import hashlib
import ipaddress
import json
import logging
import logging.handlers
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import requests
import yaml

__version__ = "1.1.0"

# =============================================================================
# Configuration
# =============================================================================

DNS_ENVIRONMENT = os.getenv("DNS_ENVIRONMENT", "test").lower().strip()

# Storage configuration
DATA_DIR = os.getenv("DATA_DIR", ".")
BACKUP_DIR = os.getenv("BACKUP_DIR", "")
KEEP_BACKUPS = int(os.getenv("KEEP_BACKUPS", "10"))

# Remote configuration
CF_API_URL = os.getenv("CF_API_URL", "https://api.cloudflare.com/client/v4")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
SETTLE_SECONDS = float(os.getenv("SETTLE_SECONDS", "2"))

# Controlled vocabularies
DEFAULT_ACCOUNT_TAGS = os.getenv("DEFAULT_ACCOUNT_TAGS", "")
DEFAULT_CONTAINER_TAGS = os.getenv("DEFAULT_CONTAINER_TAGS", "")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "")

DEFAULT_TTL = 60
MAX_CREATE_ATTEMPTS = 3
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
TAG_TYPES = ("account", "container")

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

# =============================================================================
# Logging Setup
# =============================================================================

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DNSManagerError(Exception):
    """Base class for all dns-manager errors."""


class ConfigurationError(DNSManagerError):
    """Credentials or settings are missing or unusable."""


class RemoteUnavailable(DNSManagerError):
    """The DNS authority could not be reached (transport-level failure)."""


class RemoteRejected(DNSManagerError):
    """The DNS authority answered, but reported a failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        errors: Optional[List[Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class CorruptDocument(DNSManagerError):
    """The desired-state document exists but cannot be parsed."""


class InvalidBackup(DNSManagerError):
    """A backup file is unreadable or is not a desired-state document."""


class NotFound(DNSManagerError):
    """No local record matches the requested entry."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Credentials:
    """Cloudflare API credentials for one environment."""

    token: str
    zone_id: str
    domain: str

    def validate(self) -> "Credentials":
        missing = [
            label
            for label, value in (
                ("token", self.token),
                ("zone_id", self.zone_id),
                ("domain", self.domain),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing credential field(s): {', '.join(missing)}")
        return self

    @property
    def masked_token(self) -> str:
        return _mask_token(self.token)


@dataclass(frozen=True)
class RemoteRecord:
    """An A record as reported by Cloudflare.

    ``remote_id`` is assigned by Cloudflare and changes every time a record is
    created, even for a logically identical (name, address) pair.
    """

    remote_id: str
    name: str
    address: str
    type: str = "A"
    ttl: int = 1
    proxied: bool = False
    comment: str = ""
    tags: Tuple[str, ...] = ()
    created_on: str = ""
    modified_on: str = ""
    proxiable: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteRecord":
        remote_id = data.get("id")
        name = data.get("name")
        address = data.get("content")
        if not isinstance(remote_id, str) or not isinstance(name, str):
            raise ValueError(f"record without id/name: {data}")
        if not isinstance(address, str):
            raise ValueError(f"record without content: {data}")
        return cls(
            remote_id=remote_id,
            name=name,
            address=address,
            type=str(data.get("type") or "A"),
            ttl=_coerce_int(data.get("ttl"), 1),
            proxied=bool(data.get("proxied", False)),
            comment=str(data.get("comment") or ""),
            tags=tuple(str(t) for t in data.get("tags") or []),
            created_on=str(data.get("created_on") or ""),
            modified_on=str(data.get("modified_on") or ""),
            proxiable=bool(data.get("proxiable", False)),
        )


@dataclass
class DesiredRecord:
    """One DNS entry the operator wants to be able to activate.

    Only the persisted fields are written to disk; ``remote_id``,
    ``created_on`` and ``modified_on`` are filled in while a live remote
    listing is being looked at and are never saved.
    """

    name: str
    address: str
    identity: str = ""
    alias: str = ""
    description: str = ""
    account: str = ""
    container: str = ""
    notes: str = ""
    first_seen_at: str = ""
    last_activated_at: str = ""
    type: str = "A"
    ttl: int = DEFAULT_TTL
    proxied: bool = False
    comment: str = ""
    tags: List[str] = field(default_factory=list)

    remote_id: str = field(default="", compare=False)
    created_on: str = field(default="", compare=False)
    modified_on: str = field(default="", compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "alias": self.alias,
            "description": self.description,
            "account": self.account,
            "container": self.container,
            "notes": self.notes,
            "first_seen_at": self.first_seen_at,
            "last_activated_at": self.last_activated_at,
            "type": self.type,
            "name": self.name,
            "address": self.address,
            "ttl": self.ttl,
            "proxied": self.proxied,
            "comment": self.comment,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DesiredRecord":
        if not isinstance(data, dict):
            raise ValueError(f"record must be an object, got {type(data).__name__}")
        name = data.get("name")
        # Older documents used "content" for the address
        address = data.get("address", data.get("content"))
        if not isinstance(name, str) or not isinstance(address, str):
            raise ValueError(f"record without name/address: {data}")
        tags = data.get("tags") or []
        if not isinstance(tags, list):
            raise ValueError(f"record tags must be a list: {data}")
        return cls(
            name=name,
            address=address,
            identity=str(data.get("identity") or data.get("unique_id") or ""),
            alias=str(data.get("alias") or ""),
            description=str(data.get("description") or ""),
            account=str(data.get("account") or ""),
            container=str(data.get("container") or ""),
            notes=str(data.get("notes") or ""),
            first_seen_at=str(data.get("first_seen_at") or data.get("first_seen_on") or ""),
            last_activated_at=str(
                data.get("last_activated_at") or data.get("last_activated_on") or ""
            ),
            type=str(data.get("type") or "A"),
            ttl=_coerce_int(data.get("ttl"), DEFAULT_TTL),
            proxied=_parse_bool(data.get("proxied"), default=False),
            comment=str(data.get("comment") or ""),
            tags=[str(t) for t in tags],
        )


@dataclass
class DesiredStateDocument:
    """The persisted desired state of one environment."""

    environment: str
    domain: str
    records: List[DesiredRecord] = field(default_factory=list)
    account_tags: List[str] = field(default_factory=list)
    container_tags: List[str] = field(default_factory=list)
    last_sync: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "domain": self.domain,
            "last_sync": self.last_sync,
            "records": [r.to_dict() for r in self.records],
            "account_tags": list(self.account_tags),
            "container_tags": list(self.container_tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DesiredStateDocument":
        if not isinstance(data, dict):
            raise ValueError(f"document must be an object, got {type(data).__name__}")
        raw_records = data.get("records", data.get("servers")) or []
        if not isinstance(raw_records, list):
            raise ValueError("document records must be a list")
        account_tags = data.get("account_tags", data.get("available_accounts")) or []
        container_tags = data.get("container_tags", data.get("available_containers")) or []
        if not isinstance(account_tags, list) or not isinstance(container_tags, list):
            raise ValueError("document tag vocabularies must be lists")
        return cls(
            environment=str(data.get("environment") or ""),
            domain=str(data.get("domain") or ""),
            records=[DesiredRecord.from_dict(r) for r in raw_records],
            account_tags=[str(t) for t in account_tags],
            container_tags=[str(t) for t in container_tags],
            last_sync=str(data.get("last_sync") or ""),
        )

    def vocabulary(self, tag_type: str) -> List[str]:
        _check_tag_type(tag_type)
        return self.account_tags if tag_type == "account" else self.container_tags

    def find(self, identity: str) -> Optional[DesiredRecord]:
        for record in self.records:
            if identity and record.identity == identity:
                return record
        return None


@dataclass(frozen=True)
class ActivationRequest:
    """One (name, address) pair the operator wants to be active."""

    name: str
    address: str
    alias: str = ""
    account: str = ""
    container: str = ""
    proxied: bool = False
    ttl: int = DEFAULT_TTL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivationRequest":
        if not isinstance(data, dict):
            raise ValueError(f"activation entry must be an object: {data}")
        name = str(data.get("name") or "").strip()
        address = str(data.get("address") or data.get("ip") or "").strip()
        if not name or not address:
            raise ValueError(f"activation entry requires name and address: {data}")
        return cls(
            name=name,
            address=address,
            alias=str(data.get("alias") or ""),
            account=str(data.get("account") or ""),
            container=str(data.get("container") or ""),
            proxied=_parse_bool(data.get("proxied"), default=False),
            ttl=_coerce_int(data.get("ttl"), DEFAULT_TTL),
        )


@dataclass(frozen=True)
class OperationDetail:
    """Outcome of one attempted remote mutation."""

    message: str
    status: str

    def to_dict(self) -> Dict[str, str]:
        return {"message": self.message, "status": self.status}


@dataclass
class RunResult:
    """Outcome of a reconciliation run."""

    success: bool
    message: str
    applied: int = 0
    details: List[OperationDetail] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "applied": self.applied,
            "details": [d.to_dict() for d in self.details],
        }


@dataclass
class ChangePlan:
    """Creates and deletes needed to move the remote set to the desired set."""

    creates: List[ActivationRequest] = field(default_factory=list)
    deletes: List[RemoteRecord] = field(default_factory=list)
    unchanged: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.creates and not self.deletes


@dataclass(frozen=True)
class ViewEntry:
    """A single name variant shown for an address."""

    identity: str
    name: str
    address: str
    alias: str
    account: str
    container: str
    notes: str
    proxied: bool
    ttl: int
    active: bool
    remote_id: str = ""


@dataclass
class AddressGroup:
    """All known name variants pointing at one address."""

    address: str
    names: str = ""
    notes: str = ""
    entries: List[ViewEntry] = field(default_factory=list)
    has_active_entries: bool = False


@dataclass
class DNSView:
    """Desired and remote records merged into one operator-facing view."""

    environment: str
    domain: str
    groups: List[AddressGroup]
    active_count: int
    inactive_count: int
    account_tags: List[str] = field(default_factory=list)
    container_tags: List[str] = field(default_factory=list)

    @property
    def total_addresses(self) -> int:
        return len({g.address for g in self.groups})


# =============================================================================
# Utility Functions
# =============================================================================


def generate_identity(name: str, address: str) -> str:
    """Stable identifier for a (name, address) pair.

    First 8 bytes of sha256("name:address"), hex encoded. Does not depend on
    the Cloudflare record id, so it survives delete/recreate cycles.
    """
    digest = hashlib.sha256(f"{name}:{address}".encode("utf-8")).digest()
    return digest[:8].hex()


def full_record_name(name: str, domain: str) -> str:
    """Expand a short name ("us") to a full record name ("us.<domain>")."""
    if not domain:
        return name
    if "." in name and name.endswith(domain):
        return name
    return f"{name}.{domain}"


def short_record_name(name: str, domain: str) -> str:
    """Strip the managed domain from a full record name."""
    suffix = f".{domain}"
    if domain and name.endswith(suffix):
        return name[: -len(suffix)]
    return name


def validate_address(address: str) -> str:
    try:
        return str(ipaddress.IPv4Address(address.strip()))
    except ValueError as e:
        raise ValueError(f"Invalid IPv4 address '{address}': {e}") from e


def _check_tag_type(tag_type: str) -> None:
    if tag_type not in TAG_TYPES:
        raise ValueError(f"Invalid tag type '{tag_type}'. Supported: {', '.join(TAG_TYPES)}")


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_tag_list(value: str) -> List[str]:
    """Parse a comma-separated tag list into a sorted, de-duplicated list."""
    return sorted({item.strip() for item in (value or "").split(",") if item.strip()})


def _mask_token(token: str) -> str:
    if len(token) > 8:
        return f"{token[:4]}...{token[-4:]}"
    return "*" * len(token)


def _backup_sort_key(path: Path) -> Tuple[float, str, int]:
    """Order backups by mtime, then timestamp, then same-second sequence."""
    suffix = path.name.rsplit(".backup-", 1)[-1]
    parts = suffix.split("-")
    stamp = "-".join(parts[:2])
    sequence = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0
    return (path.stat().st_mtime, stamp, sequence)


def _address_sort_key(address: str) -> Tuple[int, Any]:
    try:
        return (0, int(ipaddress.IPv4Address(address)))
    except ValueError:
        return (1, address)


# =============================================================================
# Locking
# =============================================================================


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Waiting writers take precedence: new readers queue behind them, so a
    steady stream of readers cannot starve a writer. Not reentrant.
    """

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0
        self._cond = threading.Condition(threading.Lock())

    def acquire_read(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(
                lambda: not self._writer and self._writers_waiting == 0, timeout=timeout
            ):
                return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            self._writers_waiting += 1
            try:
                acquired = self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0, timeout=timeout
                )
            finally:
                self._writers_waiting -= 1
            if not acquired:
                # Readers held back by this writer may proceed
                self._cond.notify_all()
                return False
            self._writer = True
            return True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# =============================================================================
# Credentials
# =============================================================================


def _credentials_from_mapping(data: Dict[str, Any]) -> Credentials:
    return Credentials(
        token=str(data.get("token") or data.get("CF_API_TOKEN") or "").strip(),
        zone_id=str(data.get("zone_id") or data.get("CF_ZONE_ID") or "").strip(),
        domain=str(data.get("domain") or data.get("DNS_NAME") or "").strip(),
    )


def _credentials_from_file(path: Path) -> Optional[Credentials]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to read credentials from {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Credentials file {path} is not a mapping")
        return None
    return _credentials_from_mapping(data)


def load_credentials(environment: str, config_path: str = "", data_dir: str = DATA_DIR) -> Credentials:
    """Resolve credentials for an environment.

    Order: explicit YAML file, CF_API_TOKEN/CF_ZONE_ID/DNS_NAME environment
    variables, then <data_dir>/credentials.<env>.yaml. The first complete set
    wins; ConfigurationError if none is complete.
    """
    if config_path:
        logger.info(f"Loading credentials from custom file: {config_path}")
        creds = _credentials_from_file(Path(config_path))
        if creds is not None:
            try:
                return creds.validate()
            except ConfigurationError as e:
                logger.warning(f"Incomplete credentials in {config_path}: {e}")

    if os.getenv("CF_API_TOKEN"):
        logger.info("Loading credentials from environment variables")
        creds = Credentials(
            token=os.getenv("CF_API_TOKEN", "").strip(),
            zone_id=os.getenv("CF_ZONE_ID", "").strip(),
            domain=os.getenv("DNS_NAME", "").strip(),
        )
        try:
            return creds.validate()
        except ConfigurationError as e:
            logger.warning(f"Incomplete credentials in environment: {e}")

    env_file = Path(data_dir) / f"credentials.{environment}.yaml"
    if env_file.exists():
        logger.info(f"Loading credentials from {env_file}")
        creds = _credentials_from_file(env_file)
        if creds is not None:
            return creds.validate()

    raise ConfigurationError(
        f"No credentials found for environment '{environment}' "
        f"(set CF_API_TOKEN, CF_ZONE_ID and DNS_NAME, or create {env_file})"
    )


# =============================================================================
# DNS Client Interface and Implementations
# =============================================================================


class DNSClient(ABC):
    """Abstract base class for the remote DNS authority."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the client name for logging."""
        pass

    @property
    @abstractmethod
    def domain(self) -> str:
        """Return the managed domain."""
        pass

    @abstractmethod
    def list_records(self) -> List[RemoteRecord]:
        """List A records under the managed domain."""
        pass

    @abstractmethod
    def create_record(
        self,
        address: str,
        name: str,
        comment: str = "",
        proxied: bool = False,
        ttl: int = DEFAULT_TTL,
    ) -> str:
        """Create an A record and return its remote id."""
        pass

    @abstractmethod
    def delete_record(self, remote_id: str) -> None:
        """Delete an A record by remote id."""
        pass

    def verify_record(self, remote_id: str, expected_address: str) -> bool:
        """True iff a fresh listing has this id pointing at this address."""
        try:
            records = self.list_records()
        except DNSManagerError as e:
            logger.warning(f"Verification listing failed for {remote_id}: {e}")
            return False
        return any(r.remote_id == remote_id and r.address == expected_address for r in records)

    def test_connection(self) -> bool:
        try:
            self.list_records()
        except DNSManagerError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False
        logger.info(f"{self.name} connection successful")
        return True


class CloudflareClient(DNSClient):
    """Cloudflare v4 API client for the A records of one zone."""

    def __init__(
        self,
        credentials: Credentials,
        *,
        api_url: str = CF_API_URL,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        settle_seconds: float = SETTLE_SECONDS,
        max_attempts: int = MAX_CREATE_ATTEMPTS,
    ):
        self._credentials = credentials.validate()
        self._url = f"{api_url.rstrip('/')}/zones/{credentials.zone_id}"
        self._timeout = timeout_seconds
        self._settle = settle_seconds
        self._max_attempts = max(1, max_attempts)
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {credentials.token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    @property
    def domain(self) -> str:
        return self._credentials.domain

    def _decode(self, response: requests.Response) -> Dict[str, Any]:
        """Return the JSON envelope, or raise RemoteRejected if it is not a success."""
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteRejected(
                f"Unexpected response from {self.name} (status {response.status_code})",
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict) or not payload.get("success"):
            errors = payload.get("errors") if isinstance(payload, dict) else None
            raise RemoteRejected(
                f"{self.name} API error: {errors}",
                status_code=response.status_code,
                errors=errors if isinstance(errors, list) else None,
            )
        return payload

    def list_records(self) -> List[RemoteRecord]:
        domain = self.domain
        logger.info(f"Fetching DNS records ending with {domain}")

        records: List[RemoteRecord] = []
        page = 1
        while True:
            try:
                response = self._session.get(
                    f"{self._url}/dns_records",
                    params={"type": "A", "name.endswith": domain, "page": page, "per_page": 100},
                    timeout=self._timeout,
                )
            except requests.exceptions.RequestException as e:
                logger.error(f"Failed to fetch DNS records: {e}")
                raise RemoteUnavailable(f"Failed to fetch DNS records: {e}") from e

            payload = self._decode(response)
            for item in payload.get("result") or []:
                try:
                    record = RemoteRecord.from_api(item if isinstance(item, dict) else {})
                except ValueError:
                    logger.warning(f"Skipping malformed record: {item}")
                    continue
                # The API filter is looser than a suffix match
                if record.type == "A" and record.name.endswith(domain):
                    records.append(record)

            info = payload.get("result_info") or {}
            total_pages = _coerce_int(info.get("total_pages"), 1) if isinstance(info, dict) else 1
            if page >= total_pages:
                break
            page += 1

        logger.info(f"Found {len(records)} DNS records for domain {domain}")
        return records

    def create_record(
        self,
        address: str,
        name: str,
        comment: str = "",
        proxied: bool = False,
        ttl: int = DEFAULT_TTL,
    ) -> str:
        if ttl <= 0:
            ttl = DEFAULT_TTL

        payload = {
            "type": "A",
            "name": full_record_name(name, self.domain),
            "content": address,
            "ttl": ttl,
            "proxied": proxied,
            "comment": comment,
        }
        label = comment or payload["name"]
        logger.info(f"Creating DNS record for {label} ({address})")

        response: Optional[requests.Response] = None
        last_error: Optional[Exception] = None
        for attempt in range(self._max_attempts):
            if attempt > 0:
                delay = 2 ** (attempt - 1)
                logger.info(f"Retrying after {delay}s (attempt {attempt + 1}/{self._max_attempts})")
                time.sleep(delay)

            try:
                response = self._session.post(
                    f"{self._url}/dns_records", json=payload, timeout=self._timeout
                )
            except requests.exceptions.RequestException as e:
                logger.warning(f"Create attempt {attempt + 1} for {label} failed: {e}")
                last_error = e
                response = None
                continue

            if response.status_code == 429:
                logger.warning(f"Create attempt {attempt + 1} for {label} rate limited (HTTP 429)")
                continue
            break

        if response is None:
            logger.error(
                f"Failed to create DNS record after {self._max_attempts} attempts: {last_error}"
            )
            raise RemoteUnavailable(
                f"Failed to create DNS record after {self._max_attempts} attempts: {last_error}"
            ) from last_error
        if response.status_code == 429:
            logger.error(f"Failed to create DNS record after {self._max_attempts} attempts: rate limited")
            raise RemoteRejected(
                f"Rate limited after {self._max_attempts} attempts", status_code=429
            )

        try:
            result = self._decode(response).get("result") or {}
        except RemoteRejected as e:
            logger.error(f"{self.name} rejected record for {label}: {e}")
            raise
        remote_id = str(result.get("id") or "") if isinstance(result, dict) else ""
        if not remote_id:
            raise RemoteRejected(
                f"{self.name} did not return a record id", status_code=response.status_code
            )

        logger.info(f"Created record with ID: {remote_id}, verifying...")
        if self._settle > 0:
            time.sleep(self._settle)

        if self.verify_record(remote_id, address):
            logger.info(f"DNS record for {label} ({address}) created and verified")
        else:
            logger.warning(f"Record {remote_id} created but verification failed")
        return remote_id

    def delete_record(self, remote_id: str) -> None:
        logger.info(f"Deleting DNS record {remote_id}")
        try:
            response = self._session.delete(
                f"{self._url}/dns_records/{remote_id}", timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to delete DNS record: {e}")
            raise RemoteUnavailable(f"Failed to delete DNS record {remote_id}: {e}") from e

        if response.status_code != 200:
            logger.error(f"Failed to delete DNS record {remote_id}: status {response.status_code}")
            raise RemoteRejected(
                f"Failed to delete record: status {response.status_code}",
                status_code=response.status_code,
            )

        if self._settle > 0:
            time.sleep(self._settle)
        try:
            remaining = self.list_records()
        except DNSManagerError as e:
            logger.warning(f"Could not confirm deletion of {remote_id}: {e}")
            return

        if any(r.remote_id == remote_id for r in remaining):
            logger.warning(f"Deletion of record {remote_id} not yet propagated")
            return
        logger.info(f"DNS record {remote_id} deleted and verified")


# =============================================================================
# Snapshot Store
# =============================================================================


class SnapshotStore:
    """Desired-state documents on disk, with a backup taken before every write."""

    def __init__(
        self,
        data_dir: str = DATA_DIR,
        *,
        backup_dir: str = BACKUP_DIR,
        keep_backups: int = KEEP_BACKUPS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.data_dir = Path(data_dir)
        self.backup_dir = Path(backup_dir) if backup_dir else None
        self.keep_backups = keep_backups
        self._clock = clock

    def document_path(self, environment: str) -> Path:
        return self.data_dir / f"servers.{environment}.json"

    def backup_directory(self, environment: str) -> Path:
        if self.backup_dir is not None:
            return self.backup_dir
        return self.document_path(environment).parent

    def load(self, environment: str) -> Optional[DesiredStateDocument]:
        path = self.document_path(environment)
        if not path.exists():
            logger.info(f"No desired-state document found at {path}")
            return None
        try:
            raw = path.read_text("utf-8")
        except OSError as e:
            raise CorruptDocument(f"Failed to read {path}: {e}") from e
        document = self._parse(raw, CorruptDocument, str(path))
        if not document.environment:
            document.environment = environment
        logger.debug(f"Loaded {len(document.records)} records from {path}")
        return document

    def save(self, environment: str, document: DesiredStateDocument) -> None:
        path = self.document_path(environment)
        if path.exists():
            try:
                self.create_backup(environment)
            except (OSError, DNSManagerError) as e:
                logger.warning(f"Failed to create backup: {e}")

        document.last_sync = self._clock().astimezone().isoformat(timespec="seconds")
        data = json.dumps(document.to_dict(), indent=2, sort_keys=True)
        self._write_atomic(path, data.encode("utf-8"))
        logger.info(f"Desired state saved to {path}")

    def create_backup(self, environment: str) -> Path:
        path = self.document_path(environment)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise NotFound(f"No desired-state document to back up: {path}") from e

        directory = self.backup_directory(environment)
        directory.mkdir(parents=True, exist_ok=True)
        stamp = self._clock().strftime(BACKUP_TIMESTAMP_FORMAT)
        # Backups taken within the same second get a -1, -2, ... suffix
        sequence = 0
        while True:
            suffix = f"{stamp}-{sequence}" if sequence else stamp
            backup_path = directory / f"{path.name}.backup-{suffix}"
            try:
                with open(backup_path, "xb") as f:
                    f.write(data)
            except FileExistsError:
                sequence += 1
                continue
            break
        logger.info(f"Backup created: {backup_path}")

        self.prune(environment)
        return backup_path

    def list_backups(self, environment: str) -> List[Path]:
        """Backups of an environment's document, newest first."""
        directory = self.backup_directory(environment)
        if not directory.is_dir():
            return []
        pattern = f"{self.document_path(environment).name}.backup-*"
        backups = [p for p in directory.glob(pattern) if p.is_file() and not p.name.endswith(".tmp")]
        return sorted(backups, key=_backup_sort_key, reverse=True)

    def prune(self, environment: str, keep: Optional[int] = None) -> List[Path]:
        """Delete backups beyond the ``keep`` newest. ``keep <= 0`` keeps everything."""
        keep = self.keep_backups if keep is None else keep
        if keep <= 0:
            return []

        removed: List[Path] = []
        for backup in self.list_backups(environment)[keep:]:
            try:
                backup.unlink()
            except OSError as e:
                logger.error(f"Failed to remove old backup {backup}: {e}")
                continue
            logger.info(f"Removed old backup: {backup.name}")
            removed.append(backup)
        return removed

    def restore(self, environment: str, backup_path: str) -> Path:
        source = self._resolve_backup(environment, backup_path)
        try:
            raw = source.read_bytes()
        except OSError as e:
            raise InvalidBackup(f"Failed to read backup file {source}: {e}") from e
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidBackup(f"Invalid backup file format: {e}") from e
        self._parse(text, InvalidBackup, str(source))

        path = self.document_path(environment)
        if path.exists():
            try:
                self.create_backup(environment)
            except (OSError, DNSManagerError) as e:
                logger.warning(f"Failed to backup current document: {e}")

        self._write_atomic(path, raw)
        logger.info(f"Desired state restored from {source}")
        return path

    def _resolve_backup(self, environment: str, backup_path: str) -> Path:
        candidate = Path(backup_path)
        if not candidate.exists() and not candidate.is_absolute():
            in_backup_dir = self.backup_directory(environment) / candidate.name
            if in_backup_dir.exists():
                return in_backup_dir
        return candidate

    @staticmethod
    def _parse(raw: str, error: type, source: str) -> DesiredStateDocument:
        try:
            return DesiredStateDocument.from_dict(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            raise error(f"Invalid document format in {source}: {e}") from e

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)


# =============================================================================
# Diff and View
# =============================================================================

RecordKey = Tuple[str, str]


def diff_records(
    current: Dict[RecordKey, RemoteRecord],
    desired: Dict[RecordKey, ActivationRequest],
) -> ChangePlan:
    """Compare remote and desired (name, address) keys.

    Keys present on both sides are left untouched, even if ttl or proxied
    differ; changing those requires a deactivate/activate cycle.
    """
    plan = ChangePlan()
    for key in sorted(desired):
        if key in current:
            plan.unchanged.append(key)
        else:
            plan.creates.append(desired[key])
    for key in sorted(current):
        if key not in desired:
            plan.deletes.append(current[key])
    return plan


def build_view(
    document: DesiredStateDocument,
    remote_records: List[RemoteRecord],
    domain: str,
    *,
    grouped: bool = True,
) -> DNSView:
    """Merge the document and the remote listing into one view.

    Every remote record is shown as active; every document record without a
    live counterpart (by name and address, or identity) is shown as inactive.
    Labels are looked up by identity first, then by (address, name) for
    documents that predate identities. With ``grouped`` the entries are
    collected per address, otherwise each entry gets its own group.
    """
    by_identity: Dict[str, int] = {}
    by_key: Dict[RecordKey, int] = {}
    for index, record in enumerate(document.records):
        if record.identity:
            by_identity.setdefault(record.identity, index)
        by_key.setdefault((record.address, short_record_name(record.name, domain)), index)

    entries: List[ViewEntry] = []
    matched: set = set()
    active_keys: set = set()
    active_identities: set = set()

    for remote in remote_records:
        short = short_record_name(remote.name, domain)
        identity = generate_identity(remote.name, remote.address)
        index = by_identity.get(identity, by_key.get((remote.address, short)))
        config = document.records[index] if index is not None else None
        if index is not None:
            matched.add(index)

        alias = (config.alias if config and config.alias else remote.comment) or short
        entries.append(
            ViewEntry(
                identity=identity,
                name=short,
                address=remote.address,
                alias=alias,
                account=config.account if config else "",
                container=config.container if config else "",
                notes=config.notes if config else "",
                proxied=remote.proxied,
                ttl=remote.ttl,
                active=True,
                remote_id=remote.remote_id,
            )
        )
        active_keys.add((remote.address, short))
        active_identities.add(identity)

    for index, record in enumerate(document.records):
        if index in matched:
            continue
        short = short_record_name(record.name, domain)
        identity = record.identity or generate_identity(record.name, record.address)
        if (record.address, short) in active_keys or identity in active_identities:
            continue
        entries.append(
            ViewEntry(
                identity=identity,
                name=short,
                address=record.address,
                alias=record.alias or short,
                account=record.account,
                container=record.container,
                notes=record.notes,
                proxied=record.proxied,
                ttl=record.ttl,
                active=False,
            )
        )

    groups: Dict[Any, AddressGroup] = {}
    for entry in entries:
        group_key: Any = entry.address if grouped else (entry.address, entry.name, entry.identity)
        group = groups.get(group_key)
        if group is None:
            group = groups[group_key] = AddressGroup(address=entry.address)
        group.entries.append(entry)
        if entry.active:
            group.has_active_entries = True
        aliases = [a for a in group.names.split("; ") if a]
        if entry.alias and entry.alias not in aliases:
            group.names = "; ".join(aliases + [entry.alias])
        if not group.notes and entry.notes:
            group.notes = entry.notes

    ordered = sorted(
        groups.values(),
        key=lambda g: (_address_sort_key(g.address), g.entries[0].name),
    )
    active_count = sum(1 for e in entries if e.active)
    return DNSView(
        environment=document.environment,
        domain=domain,
        groups=ordered,
        active_count=active_count,
        inactive_count=len(entries) - active_count,
        account_tags=list(document.account_tags),
        container_tags=list(document.container_tags),
    )


# =============================================================================
# Core Manager
# =============================================================================


class DNSManager:
    """Reconciles Cloudflare with the desired state and edits that state.

    All document access for an environment goes through that environment's
    ReadWriteLock. Remote calls are always made with the lock released.
    """

    def __init__(
        self,
        *,
        client: DNSClient,
        store: SnapshotStore,
        default_account_tags: Optional[List[str]] = None,
        default_container_tags: Optional[List[str]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.client = client
        self.store = store
        self.default_account_tags = list(default_account_tags or [])
        self.default_container_tags = list(default_container_tags or [])
        self._clock = clock
        self._locks: Dict[str, ReadWriteLock] = {}
        self._locks_guard = threading.Lock()
        self._started = time.monotonic()

    @property
    def domain(self) -> str:
        return self.client.domain

    def lock_for(self, environment: str) -> ReadWriteLock:
        with self._locks_guard:
            lock = self._locks.get(environment)
            if lock is None:
                lock = self._locks[environment] = ReadWriteLock()
            return lock

    def _timestamp(self) -> str:
        return self._clock().astimezone().isoformat(timespec="seconds")

    def _today(self) -> str:
        return self._clock().strftime("%Y-%m-%d")

    def _new_document(self, environment: str) -> DesiredStateDocument:
        return DesiredStateDocument(
            environment=environment,
            domain=self.domain,
            account_tags=list(self.default_account_tags),
            container_tags=list(self.default_container_tags),
        )

    def _fill_vocabularies(self, document: DesiredStateDocument) -> None:
        if not document.account_tags:
            document.account_tags = list(self.default_account_tags)
        if not document.container_tags:
            document.container_tags = list(self.default_container_tags)

    def _load_locked(self, environment: str) -> Optional[DesiredStateDocument]:
        """Load a document, giving identities to records that lack one.

        The caller must hold the environment's write lock.
        """
        document = self.store.load(environment)
        if document is None:
            return None
        self._fill_vocabularies(document)

        migrated = 0
        seen = {r.identity for r in document.records if r.identity}
        for record in document.records:
            if record.identity:
                continue
            record.identity = generate_identity(record.name, record.address)
            if record.identity in seen:
                logger.warning(
                    f"Duplicate record {record.name} ({record.address}) shares identity {record.identity}"
                )
            seen.add(record.identity)
            migrated += 1
            logger.info(
                f"Generated identity for {record.name} ({record.address}): {record.identity}"
            )

        if migrated:
            try:
                self.store.save(environment, document)
            except OSError as e:
                logger.warning(f"Failed to save migrated document: {e}")
            else:
                logger.info(f"Saved document with {migrated} generated identities")
        return document

    def load_document(self, environment: str) -> Optional[DesiredStateDocument]:
        with self.lock_for(environment).write():
            return self._load_locked(environment)

    def _match_record(
        self, document: DesiredStateDocument, identity: str, name: str, address: str
    ) -> Optional[DesiredRecord]:
        record = document.find(identity)
        if record is not None:
            return record
        if not name or not address:
            return None
        short = short_record_name(name, self.domain)
        for candidate in document.records:
            if candidate.address == address and short_record_name(candidate.name, self.domain) == short:
                if not candidate.identity:
                    candidate.identity = generate_identity(candidate.name, candidate.address)
                return candidate
        return None

    def _record_from_remote(self, remote: RemoteRecord, description: str) -> DesiredRecord:
        now = self._timestamp()
        return DesiredRecord(
            identity=generate_identity(remote.name, remote.address),
            name=remote.name,
            address=remote.address,
            alias=remote.comment or f"server-{remote.address.replace('.', '-')}",
            description=description,
            first_seen_at=now,
            last_activated_at=now,
            type=remote.type,
            ttl=remote.ttl,
            proxied=remote.proxied,
            comment=remote.comment,
            tags=list(remote.tags),
            remote_id=remote.remote_id,
            created_on=remote.created_on,
            modified_on=remote.modified_on,
        )

    def import_remote(self, environment: str, records: List[RemoteRecord]) -> DesiredStateDocument:
        """Build a new document from records found at Cloudflare."""
        document = self._new_document(environment)
        description = f"Imported from Cloudflare on {self._today()}"
        seen: set = set()
        for remote in records:
            record = self._record_from_remote(remote, description)
            if record.identity in seen:
                continue
            seen.add(record.identity)
            document.records.append(record)
        logger.info(f"Imported {len(document.records)} records from {self.client.name}")
        return document

    # -------------------------------------------------------------------------
    # View
    # -------------------------------------------------------------------------

    def view(self, environment: str, *, grouped: bool = True) -> DNSView:
        remote = self.client.list_records()

        lock = self.lock_for(environment)
        with lock.read():
            document = self.store.load(environment)

        needs_write = (document is None and bool(remote)) or (
            document is not None and any(not r.identity for r in document.records)
        )
        if needs_write:
            with lock.write():
                document = self._load_locked(environment)
                if document is None and remote:
                    document = self.import_remote(environment, remote)
                    try:
                        self.store.save(environment, document)
                    except OSError as e:
                        logger.error(f"Failed to save imported document: {e}")

        if document is None:
            document = self._new_document(environment)
        else:
            self._fill_vocabularies(document)
        return build_view(document, remote, self.domain, grouped=grouped)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def _request_key(self, request: ActivationRequest) -> RecordKey:
        return (short_record_name(request.name, self.domain), request.address)

    def reconcile(
        self, environment: str, desired_activation_set: Iterable[ActivationRequest]
    ) -> RunResult:
        """Converge Cloudflare on the desired activation set.

        Creates run before deletes. A failed operation becomes an ``error``
        detail and the batch continues. The document is only written when at
        least one operation succeeded.
        """
        try:
            remote = self.client.list_records()
        except DNSManagerError as e:
            logger.error(f"Failed to fetch current records: {e}")
            return RunResult(success=False, message=f"Failed to fetch current records: {e}")

        current: Dict[RecordKey, RemoteRecord] = {}
        for record in remote:
            current[(short_record_name(record.name, self.domain), record.address)] = record
        desired: Dict[RecordKey, ActivationRequest] = {}
        for request in desired_activation_set:
            desired[self._request_key(request)] = request

        plan = diff_records(current, desired)
        for key in plan.unchanged:
            live, wanted = current[key], desired[key]
            wanted_ttl = wanted.ttl if wanted.ttl > 0 else DEFAULT_TTL
            if live.proxied != wanted.proxied or live.ttl != wanted_ttl:
                logger.info(
                    f"Ignoring ttl/proxied change for active record {key[0]} ({key[1]}); "
                    f"deactivate and reactivate to apply it"
                )

        logger.info(
            f"[{environment}] Reconciling: {len(plan.creates)} to create, "
            f"{len(plan.deletes)} to delete, {len(plan.unchanged)} unchanged"
        )

        details: List[OperationDetail] = []
        activated: List[ActivationRequest] = []

        for request in plan.creates:
            name, address = self._request_key(request)
            ttl = request.ttl if request.ttl > 0 else DEFAULT_TTL
            try:
                self.client.create_record(address, name, request.alias, request.proxied, ttl)
            except DNSManagerError as e:
                details.append(
                    OperationDetail(
                        f"Failed to activate {name} ({request.alias} -> {address}): {e}",
                        STATUS_ERROR,
                    )
                )
                continue
            proxy_status = "proxied" if request.proxied else "DNS-only"
            details.append(
                OperationDetail(
                    f"Activated {name} ({request.alias} -> {address}) [{proxy_status}, TTL: {ttl}]",
                    STATUS_SUCCESS,
                )
            )
            activated.append(replace(request, name=name, ttl=ttl))

        deleted = 0
        for record in plan.deletes:
            name = short_record_name(record.name, self.domain)
            try:
                self.client.delete_record(record.remote_id)
            except DNSManagerError as e:
                details.append(
                    OperationDetail(
                        f"Failed to deactivate {name} ({record.comment} -> {record.address}): {e}",
                        STATUS_ERROR,
                    )
                )
                continue
            details.append(
                OperationDetail(
                    f"Deactivated {name} ({record.comment} -> {record.address})", STATUS_SUCCESS
                )
            )
            deleted += 1

        applied = len(activated) + deleted
        failed = sum(1 for d in details if d.status == STATUS_ERROR)
        if applied == 0 and failed == 0:
            return RunResult(success=True, message="No changes required")

        if applied:
            self._persist_activations(environment, activated)

        if failed:
            message = f"Updated {applied} DNS records, {failed} failed"
        else:
            message = f"Successfully updated {applied} DNS records"
        logger.info(f"[{environment}] {message}")
        return RunResult(success=failed == 0, message=message, applied=applied, details=details)

    def _persist_activations(self, environment: str, activated: List[ActivationRequest]) -> None:
        try:
            with self.lock_for(environment).write():
                document = self._load_locked(environment) or self._new_document(environment)
                now = self._timestamp()
                for request in activated:
                    full_name = full_record_name(request.name, self.domain)
                    identity = generate_identity(full_name, request.address)
                    record = self._match_record(document, identity, request.name, request.address)
                    if record is not None:
                        record.last_activated_at = now
                        record.ttl = request.ttl
                        record.proxied = request.proxied
                        continue
                    document.records.append(
                        DesiredRecord(
                            identity=identity,
                            name=full_name,
                            address=request.address,
                            alias=request.alias,
                            account=request.account,
                            container=request.container,
                            description=f"Added via activation on {self._today()}",
                            first_seen_at=now,
                            last_activated_at=now,
                            ttl=request.ttl,
                            proxied=request.proxied,
                            comment=request.alias,
                        )
                    )
                self.store.save(environment, document)
        except (DNSManagerError, OSError) as e:
            # Cloudflare already holds the change; the next view re-derives activity
            logger.error(f"Failed to save desired state after updates: {e}")

    def create_single_entry(
        self,
        environment: str,
        name: str,
        address: str,
        alias: str = "",
        proxied: bool = False,
        ttl: int = DEFAULT_TTL,
    ) -> str:
        """Create one record directly, without a full diff. Returns its identity."""
        name = name.strip()
        if not name or not address.strip():
            raise ValueError("Name and address are required")
        address = validate_address(address)
        if ttl <= 0:
            ttl = DEFAULT_TTL
        alias = alias or name

        remote_id = self.client.create_record(address, name, alias, proxied, ttl)

        full_name = full_record_name(name, self.domain)
        identity = generate_identity(full_name, address)
        try:
            with self.lock_for(environment).write():
                document = self._load_locked(environment) or self._new_document(environment)
                now = self._timestamp()
                record = document.find(identity)
                if record is not None:
                    record.last_activated_at = now
                else:
                    document.records.append(
                        DesiredRecord(
                            identity=identity,
                            name=full_name,
                            address=address,
                            alias=alias,
                            first_seen_at=now,
                            last_activated_at=now,
                            ttl=ttl,
                            proxied=proxied,
                        )
                    )
                self.store.save(environment, document)
        except (DNSManagerError, OSError) as e:
            logger.warning(f"DNS record created but failed to save desired state: {e}")

        logger.info(f"Created DNS record: {name} -> {address} (ID: {remote_id})")
        return identity

    # -------------------------------------------------------------------------
    # Metadata edits
    # -------------------------------------------------------------------------

    def update_tag(
        self,
        environment: str,
        tag_type: str,
        value: str,
        *,
        identity: str = "",
        name: str = "",
        address: str = "",
    ) -> str:
        """Set the account or container tag of a record. Returns its identity.

        The record is looked up by identity, then by (address, name). A live
        Cloudflare record missing from the document is imported first.
        """
        _check_tag_type(tag_type)
        lock = self.lock_for(environment)

        with lock.write():
            document = self._load_locked(environment)
            if document is not None:
                record = self._match_record(document, identity, name, address)
                if record is not None:
                    setattr(record, tag_type, value)
                    self.store.save(environment, document)
                    logger.info(f"Updated {tag_type} tag to '{value}' for {record.name} ({record.address})")
                    return record.identity

        if not name or not address:
            raise NotFound(f"No record with identity '{identity}'")

        short = short_record_name(name, self.domain)
        remote = next(
            (
                r
                for r in self.client.list_records()
                if r.address == address and short_record_name(r.name, self.domain) == short
            ),
            None,
        )
        if remote is None:
            raise NotFound(f"No record for {name} ({address})")

        with lock.write():
            document = self._load_locked(environment) or self._new_document(environment)
            record = self._match_record(document, identity, name, address)
            if record is None:
                record = self._record_from_remote(remote, f"Added via tag update on {self._today()}")
                document.records.append(record)
            setattr(record, tag_type, value)
            self.store.save(environment, document)

        logger.info(f"Updated {tag_type} tag to '{value}' for {record.name} ({record.address})")
        return record.identity

    def update_notes(self, environment: str, address: str, notes: str) -> int:
        """Set the notes of every record pointing at ``address``."""
        with self.lock_for(environment).write():
            document = self._load_locked(environment)
            matches = [r for r in document.records if r.address == address] if document else []
            if not matches:
                raise NotFound(f"No records found with address {address}")
            for record in matches:
                record.notes = notes
                logger.info(f"Updated notes for {record.name} ({address})")
            self.store.save(environment, document)
        return len(matches)

    def add_vocabulary_tag(self, environment: str, tag_type: str, name: str) -> List[str]:
        """Add a tag to the account or container vocabulary; returns the sorted vocabulary."""
        _check_tag_type(tag_type)
        name = name.strip()
        if not name:
            raise ValueError("Tag name cannot be empty")

        with self.lock_for(environment).write():
            document = self._load_locked(environment)
            created = document is None
            if document is None:
                document = self._new_document(environment)
            vocabulary = document.vocabulary(tag_type)
            if name not in vocabulary:
                vocabulary.append(name)
                vocabulary.sort()
                logger.info(f"Added new {tag_type} tag: {name}")
                self.store.save(environment, document)
            elif created:
                self.store.save(environment, document)
            return list(vocabulary)

    # -------------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------------

    def backup(self, environment: str) -> Path:
        with self.lock_for(environment).write():
            return self.store.create_backup(environment)

    def list_backups(self, environment: str) -> List[Path]:
        with self.lock_for(environment).read():
            return self.store.list_backups(environment)

    def restore(self, environment: str, backup_path: str) -> Path:
        with self.lock_for(environment).write():
            return self.store.restore(environment, backup_path)

    def health(self, environment: str) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "environment": environment,
            "uptime_seconds": int(time.monotonic() - self._started),
            "remote_connected": self.client.test_connection(),
        }


# =============================================================================
# Main
# =============================================================================


def load_activation_file(path: str) -> List[ActivationRequest]:
    """Read a desired activation set from YAML.

    Accepts a top-level list, or a mapping with an ``active_servers`` or
    ``records`` list of {name, address|ip, alias, account, container, proxied, ttl}.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("active_servers", data.get("records"))
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of records")

    activations: List[ActivationRequest] = []
    for item in data:
        request = ActivationRequest.from_dict(item)
        validate_address(request.address)
        activations.append(request)
    return activations


def configure_logging(environment: str, log_dir: str = "", verbose: bool = False) -> None:
    root = logging.getLogger()
    if verbose:
        root.setLevel(logging.DEBUG)
    if not log_dir:
        return
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.TimedRotatingFileHandler(
        Path(log_dir) / f"dns-manager-{environment}.log", when="midnight", backupCount=30
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dns-manager",
        description="Keep Cloudflare A records in sync with a local desired state",
    )
    parser.add_argument("--env", default=DNS_ENVIRONMENT, help="Environment (test/production)")
    parser.add_argument("--config", default="", help="Path to a YAML credentials file")
    parser.add_argument("--data-dir", default=DATA_DIR, help="Directory holding servers.<env>.json")
    parser.add_argument("--log-dir", default=LOG_DIR, help="Directory for daily log files")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    backups = parser.add_argument_group("backups")
    backups.add_argument("--backup", action="store_true", help="Back up the current document")
    backups.add_argument("--restore", default="", metavar="PATH", help="Restore a backup file")
    backups.add_argument("--list-backups", action="store_true", help="List available backups")
    backups.add_argument("--backup-dir", default=BACKUP_DIR, help="Directory to store backups")
    backups.add_argument(
        "--keep-backups", type=int, default=KEEP_BACKUPS, help="Backups to keep (0 = unlimited)"
    )

    actions = parser.add_argument_group("actions")
    actions.add_argument("--status", action="store_true", help="Show desired and active records")
    actions.add_argument("--apply", default="", metavar="FILE", help="Reconcile to a YAML activation set")
    actions.add_argument("--health", action="store_true", help="Check connectivity and print status")
    return parser


def print_backups(store: SnapshotStore, environment: str) -> None:
    backups = store.list_backups(environment)
    if not backups:
        print(f"No backups found for {environment} environment")
        return

    print(f"\nAvailable backups for {environment} environment:")
    print("-" * 80)
    for i, backup in enumerate(backups):
        stat = backup.stat()
        modified = datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M:%S")
        print(f"{i + 1:2d}. {backup.name}")
        print(f"    Size: {stat.st_size} bytes | Modified: {modified}")
        if store.keep_backups <= 0 or i < store.keep_backups:
            print("    Status: KEPT (within retention limit)")
        else:
            print("    Status: TO BE REMOVED (exceeds retention limit)")
        print()

    retention = "unlimited" if store.keep_backups <= 0 else f"{store.keep_backups} most recent"
    print(f"Retention policy: keep {retention} backups")
    print(f"Backup directory: {store.backup_directory(environment)}")


def print_view(view: DNSView) -> None:
    print(f"\n{view.environment.upper()} - {view.domain}")
    print(
        f"{view.total_addresses} addresses, {view.active_count} active, "
        f"{view.inactive_count} inactive"
    )
    print("-" * 80)
    for group in view.groups:
        marker = "*" if group.has_active_entries else " "
        print(f"{marker} {group.address:<16} {group.names}")
        if group.notes:
            print(f"    notes: {group.notes}")
        for entry in group.entries:
            state = "active" if entry.active else "inactive"
            tags = ", ".join(t for t in (entry.account, entry.container) if t)
            proxy = "proxied" if entry.proxied else "DNS-only"
            print(
                f"    - {entry.name:<20} {state:<8} {proxy:<8} TTL {entry.ttl:<5} "
                f"[{entry.identity}]{' ' + tags if tags else ''}"
            )


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    environment = args.env.lower().strip()
    configure_logging(environment, args.log_dir, args.verbose)

    logger.info(f"Starting dns-manager v{__version__}")
    logger.info(f"Environment: {environment}")

    store = SnapshotStore(
        args.data_dir, backup_dir=args.backup_dir, keep_backups=args.keep_backups
    )

    # Backup commands do not need credentials
    try:
        if args.list_backups:
            print_backups(store, environment)
            return
        if args.backup:
            backup_file = store.create_backup(environment)
            print(f"Backup created: {backup_file}")
            return
        if args.restore:
            store.restore(environment, args.restore)
            print(f"Configuration restored from: {args.restore}")
            return
    except DNSManagerError as e:
        logger.error(f"Backup operation failed: {e}")
        sys.exit(1)

    try:
        credentials = load_credentials(environment, args.config, args.data_dir)
    except ConfigurationError as e:
        logger.error(f"Failed to load credentials: {e}")
        sys.exit(1)
    logger.info(f"Credentials loaded (token: {credentials.masked_token})")

    if environment == "production":
        logger.warning("⚠️  Running in PRODUCTION mode!")
        logger.warning(f"Managing domain: {credentials.domain}")

    manager = DNSManager(
        client=CloudflareClient(credentials),
        store=store,
        default_account_tags=_parse_tag_list(DEFAULT_ACCOUNT_TAGS),
        default_container_tags=_parse_tag_list(DEFAULT_CONTAINER_TAGS),
    )

    try:
        if args.health:
            health = manager.health(environment)
            print(json.dumps(health, indent=2))
            if not health["remote_connected"]:
                sys.exit(1)
            return

        if args.apply:
            try:
                desired = load_activation_file(args.apply)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.error(f"Failed to read activation set {args.apply}: {e}")
                sys.exit(1)
            result = manager.reconcile(environment, desired)
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            if not result.success:
                sys.exit(1)
            return

        print_view(manager.view(environment))
    except DNSManagerError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")


if __name__ == "__main__":
    main()
