from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .auth.providers import AUTH_METHODS
from .migration.orchestrator import CLEANUP_CONFIRMATION_TOKEN, OrchestratorSettings
from .util.errors import ConfigurationError

# --------
# Defaults
# --------
DEFAULT_OUTDIR = "out"
DEFAULT_BATCH_SIZE = 10
DEFAULT_DELAY_MINUTES = 5.0
DEFAULT_SOAK_HOURS = 48.0
DEFAULT_ZONES = ["1", "2", "3"]
DEFAULT_TAG_KEY = "MigratedFrom"
DEFAULT_TAG_VALUE = "BasicSku"
DEFAULT_VALIDATION_PORTS = [80, 443]
DEFAULT_VALIDATION_TIMEOUT = 5.0
DEFAULT_WORKERS_VALIDATE = 4
ALLOCATION_METHODS = {"static": "Static", "dynamic": "Dynamic"}
ADDRESS_VERSIONS = {"ipv4": "IPv4", "ipv6": "IPv6"}
LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

# camelCase file key -> internal field
FILE_KEYS = {
    "outdir": "outdir",
    "logLevel": "log_level",
    "jsonLogs": "json_logs",
    "auth": "auth",
    "tenantId": "tenant_id",
    "subscriptionId": "subscription_id",
    "subscriptionName": "subscription_name",
    "scanAllSubscriptions": "scan_all_subscriptions",
    "includeSubscriptions": "include_subscriptions",
    "excludeSubscriptions": "exclude_subscriptions",
    "batchSize": "batch_size",
    "delayBetweenBatchesMinutes": "delay_between_batches_minutes",
    "soakPeriodHours": "soak_period_hours",
    "standardAllocationMethod": "standard_allocation_method",
    "addressVersion": "address_version",
    "useZones": "use_zones",
    "zones": "zones",
    "tagKey": "tag_key",
    "tagValue": "tag_value",
    "workersValidate": "workers_validate",
}
VALIDATION_FILE_KEYS = {
    "ports": "validation_ports",
    "timeoutSeconds": "validation_timeout_seconds",
    "icmp": "validation_icmp",
}
BOOL_KEYS = {"json_logs", "scan_all_subscriptions", "use_zones", "validation_icmp"}
INT_KEYS = {"batch_size", "workers_validate"}
FLOAT_KEYS = {"delay_between_batches_minutes", "soak_period_hours", "validation_timeout_seconds"}
LIST_KEYS = {"include_subscriptions", "exclude_subscriptions", "zones"}
STR_KEYS = {
    "outdir",
    "log_level",
    "auth",
    "tenant_id",
    "subscription_id",
    "subscription_name",
    "standard_allocation_method",
    "address_version",
    "tag_key",
    "tag_value",
}


@dataclass(frozen=True)
class MigrationConfig:
    # General
    outdir: Path = Path(DEFAULT_OUTDIR)
    log_level: str = "INFO"
    json_logs: bool = False

    # Auth
    auth: str = "auto"  # auto|cli|environment|managed_identity
    tenant_id: Optional[str] = None

    # Subscriptions
    subscription_id: Optional[str] = None
    subscription_name: Optional[str] = None
    scan_all_subscriptions: bool = False
    include_subscriptions: List[str] = field(default_factory=list)
    exclude_subscriptions: List[str] = field(default_factory=list)

    # Phases
    batch_size: int = DEFAULT_BATCH_SIZE
    delay_between_batches_minutes: float = DEFAULT_DELAY_MINUTES
    soak_period_hours: float = DEFAULT_SOAK_HOURS
    standard_allocation_method: str = "Static"
    address_version: str = "IPv4"
    use_zones: bool = False
    zones: List[str] = field(default_factory=lambda: list(DEFAULT_ZONES))
    tag_key: str = DEFAULT_TAG_KEY
    tag_value: str = DEFAULT_TAG_VALUE

    # Validation
    validation_ports: List[int] = field(default_factory=lambda: list(DEFAULT_VALIDATION_PORTS))
    validation_timeout_seconds: float = DEFAULT_VALIDATION_TIMEOUT
    validation_icmp: bool = True
    workers_validate: int = DEFAULT_WORKERS_VALIDATE

    # Per-invocation
    dry_run: bool = False
    inventory: Optional[Path] = None
    confirm: Optional[str] = None

    @property
    def default_subscription(self) -> Optional[str]:
        return self.subscription_id or self.subscription_name

    @property
    def delay_between_batches_seconds(self) -> float:
        return self.delay_between_batches_minutes * 60.0


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # YAML is a superset of JSON
            data = yaml.safe_load(text) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = _env_str(name)
    if raw is None:
        return None
    return raw.lower() in {"1", "true", "yes", "on"}


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ConfigurationError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ConfigurationError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ConfigurationError(f"Config field '{key}' must be a number")


def _coerce_str_list(key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)) and all(isinstance(v, (str, int)) and not isinstance(v, bool) for v in value):
        return [str(v).strip() for v in value if str(v).strip()]
    raise ConfigurationError(f"Config field '{key}' must be a list of strings or comma-separated string")


def _coerce_ports(key: str, value: Any) -> List[int]:
    items = _coerce_str_list(key, value) if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        raise ConfigurationError(f"Config field '{key}' must be a list of port numbers")
    return [_coerce_int(key, p) for p in items]


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in BOOL_KEYS:
        return _coerce_bool(key, value)
    if key in INT_KEYS:
        return _coerce_int(key, value)
    if key in FLOAT_KEYS:
        return _coerce_float(key, value)
    if key in LIST_KEYS:
        return _coerce_str_list(key, value)
    if key == "validation_ports":
        return _coerce_ports(key, value)
    if key in STR_KEYS:
        if isinstance(value, (str, Path)):
            return str(value)
        raise ConfigurationError(f"Config field '{key}' must be a string")
    return value


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    known = set(FILE_KEYS) | {"validation"}
    unknown = sorted(set(data.keys()) - known)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key in FILE_KEYS:
            normalized[FILE_KEYS[key]] = _coerce(FILE_KEYS[key], value)

    validation = data.get("validation")
    if validation is not None:
        if not isinstance(validation, dict):
            raise ConfigurationError("Config field 'validation' must be an object")
        unknown = sorted(set(validation.keys()) - set(VALIDATION_FILE_KEYS))
        if unknown:
            warnings.warn(f"Unknown validation keys ignored: {', '.join(unknown)}")
        for key, value in validation.items():
            if key in VALIDATION_FILE_KEYS:
                normalized[VALIDATION_FILE_KEYS[key]] = _coerce(VALIDATION_FILE_KEYS[key], value)
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _choice(key: str, value: str, choices: Dict[str, str]) -> str:
    normalized = choices.get(str(value).strip().lower())
    if normalized is None:
        raise ConfigurationError(f"Config field '{key}' must be one of: {', '.join(sorted(choices.values()))}")
    return normalized


def _validate(merged: Dict[str, Any]) -> None:
    if merged["batch_size"] < 1:
        raise ConfigurationError("batchSize must be at least 1")
    if merged["delay_between_batches_minutes"] < 0:
        raise ConfigurationError("delayBetweenBatchesMinutes must not be negative")
    if merged["soak_period_hours"] < 0:
        raise ConfigurationError("soakPeriodHours must not be negative")
    if merged["validation_timeout_seconds"] <= 0:
        raise ConfigurationError("validation.timeoutSeconds must be positive")
    if merged["workers_validate"] < 1:
        raise ConfigurationError("workersValidate must be at least 1")
    bad_ports = [p for p in merged["validation_ports"] if not 0 < p < 65536]
    if bad_ports:
        raise ConfigurationError(f"validation.ports contains invalid port(s): {bad_ports}")
    if merged["use_zones"] and not merged["zones"]:
        raise ConfigurationError("useZones is enabled but no zones are configured")
    if merged["auth"] not in AUTH_METHODS:
        raise ConfigurationError(f"Config field 'auth' must be one of: {', '.join(sorted(AUTH_METHODS))}")
    if merged["log_level"] not in LOG_LEVELS:
        raise ConfigurationError(f"Config field 'logLevel' must be one of: {', '.join(sorted(LOG_LEVELS))}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipsku-migrate", description="Migrate Basic SKU public IP addresses to Standard SKU"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # common flags builder
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument("--outdir", type=Path, default=None, help=f"Output base directory (default {DEFAULT_OUTDIR})")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument(
            "--auth",
            default=None,
            choices=sorted(AUTH_METHODS),
            help="Credential source (default: auto)",
        )
        p.add_argument("--tenant", dest="tenant_id", default=None, help="Azure AD tenant id")

    def add_phase(p: argparse.ArgumentParser) -> None:
        add_common(p)
        p.add_argument("--dry-run", action="store_true", default=None, help="Log planned actions without changes")
        p.add_argument("--batch-size", type=int, default=None, help=f"Records per batch (default {DEFAULT_BATCH_SIZE})")
        p.add_argument("--inventory", type=Path, default=None, help="Inventory CSV to load (default: latest snapshot)")

    p_disc = subparsers.add_parser("discover", help="Inventory Basic SKU public IP addresses")
    add_common(p_disc)
    p_disc.add_argument("--subscription", dest="subscription_id", default=None, help="Default subscription id or name")
    p_disc.add_argument(
        "--all-subscriptions",
        dest="scan_all_subscriptions",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Scan every visible subscription",
    )

    p_create = subparsers.add_parser("create", help="Create Standard SKU replacements")
    add_phase(p_create)

    p_val = subparsers.add_parser("validate", help="Validate created replacements")
    add_phase(p_val)

    p_clean = subparsers.add_parser("cleanup", help="Delete legacy addresses after the soak period")
    add_phase(p_clean)
    p_clean.add_argument(
        "--confirm",
        default=None,
        metavar="TOKEN",
        help=f"Confirmation token required to delete ({CLEANUP_CONFIRMATION_TOKEN})",
    )

    p_sum = subparsers.add_parser("summary", help="Summarize the latest inventory snapshot")
    add_common(p_sum)
    p_sum.add_argument("--inventory", type=Path, default=None, help="Inventory CSV to load (default: latest snapshot)")

    p_ls = subparsers.add_parser("list-subscriptions", help="List subscriptions visible to the credential")
    add_common(p_ls)

    p_auth = subparsers.add_parser("validate-auth", help="Validate authentication setup")
    add_common(p_auth)
    return parser


def load_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[List[str]] = None,
) -> Tuple[str, MigrationConfig]:
    """
    Build MigrationConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, MigrationConfig) where command is the selected subcommand.
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command

    # defaults
    base: Dict[str, Any] = {
        "outdir": DEFAULT_OUTDIR,
        "log_level": "INFO",
        "json_logs": False,
        "auth": "auto",
        "tenant_id": None,
        "subscription_id": None,
        "subscription_name": None,
        "scan_all_subscriptions": False,
        "include_subscriptions": [],
        "exclude_subscriptions": [],
        "batch_size": DEFAULT_BATCH_SIZE,
        "delay_between_batches_minutes": DEFAULT_DELAY_MINUTES,
        "soak_period_hours": DEFAULT_SOAK_HOURS,
        "standard_allocation_method": "Static",
        "address_version": "IPv4",
        "use_zones": False,
        "zones": list(DEFAULT_ZONES),
        "tag_key": DEFAULT_TAG_KEY,
        "tag_value": DEFAULT_TAG_VALUE,
        "validation_ports": list(DEFAULT_VALIDATION_PORTS),
        "validation_timeout_seconds": DEFAULT_VALIDATION_TIMEOUT,
        "validation_icmp": True,
        "workers_validate": DEFAULT_WORKERS_VALIDATE,
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "outdir": _env_str("IPSKU_OUTDIR"),
            "log_level": _env_str("IPSKU_LOG_LEVEL"),
            "json_logs": _env_bool("IPSKU_JSON_LOGS"),
            "auth": _env_str("IPSKU_AUTH"),
            "tenant_id": _env_str("IPSKU_TENANT_ID"),
            "batch_size": _coerce("batch_size", _env_str("IPSKU_BATCH_SIZE")),
            "soak_period_hours": _coerce("soak_period_hours", _env_str("IPSKU_SOAK_HOURS")),
        }
    )

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "outdir": getattr(ns, "outdir", None),
            "log_level": getattr(ns, "log_level", None),
            "json_logs": getattr(ns, "json_logs", None),
            "auth": getattr(ns, "auth", None),
            "tenant_id": getattr(ns, "tenant_id", None),
            "subscription_id": getattr(ns, "subscription_id", None),
            "scan_all_subscriptions": getattr(ns, "scan_all_subscriptions", None),
            "batch_size": getattr(ns, "batch_size", None),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    # Normalize/construct types
    merged["log_level"] = str(merged["log_level"] or "INFO").upper()
    merged["auth"] = str(merged["auth"] or "auto").lower()
    merged["standard_allocation_method"] = _choice(
        "standardAllocationMethod", merged["standard_allocation_method"], ALLOCATION_METHODS
    )
    merged["address_version"] = _choice("addressVersion", merged["address_version"], ADDRESS_VERSIONS)
    if not merged.get("subscription_id") and not merged.get("subscription_name"):
        merged["subscription_id"] = _env_str("AZURE_SUBSCRIPTION_ID")
    _validate(merged)

    inventory = getattr(ns, "inventory", None)
    cfg = MigrationConfig(
        outdir=Path(merged["outdir"]),
        log_level=merged["log_level"],
        json_logs=bool(merged["json_logs"]),
        auth=merged["auth"],
        tenant_id=merged.get("tenant_id") or None,
        subscription_id=merged.get("subscription_id") or None,
        subscription_name=merged.get("subscription_name") or None,
        scan_all_subscriptions=bool(merged["scan_all_subscriptions"]),
        include_subscriptions=list(merged["include_subscriptions"]),
        exclude_subscriptions=list(merged["exclude_subscriptions"]),
        batch_size=int(merged["batch_size"]),
        delay_between_batches_minutes=float(merged["delay_between_batches_minutes"]),
        soak_period_hours=float(merged["soak_period_hours"]),
        standard_allocation_method=merged["standard_allocation_method"],
        address_version=merged["address_version"],
        use_zones=bool(merged["use_zones"]),
        zones=list(merged["zones"]),
        tag_key=str(merged["tag_key"] or ""),
        tag_value=str(merged["tag_value"] or ""),
        validation_ports=list(merged["validation_ports"]),
        validation_timeout_seconds=float(merged["validation_timeout_seconds"]),
        validation_icmp=bool(merged["validation_icmp"]),
        workers_validate=int(merged["workers_validate"]),
        dry_run=bool(getattr(ns, "dry_run", None)),
        inventory=Path(inventory) if inventory else None,
        confirm=getattr(ns, "confirm", None),
    )
    return command, cfg


def to_orchestrator_settings(cfg: MigrationConfig) -> OrchestratorSettings:
    return OrchestratorSettings(
        batch_size=cfg.batch_size,
        delay_between_batches_seconds=cfg.delay_between_batches_seconds,
        soak_period_hours=cfg.soak_period_hours,
        allocation_method=cfg.standard_allocation_method,
        ip_version=cfg.address_version,
        zones=tuple(cfg.zones) if cfg.use_zones else (),
        tags={cfg.tag_key: cfg.tag_value} if cfg.tag_key else {},
        validation_ports=tuple(cfg.validation_ports),
        validation_timeout=cfg.validation_timeout_seconds,
        validation_icmp=cfg.validation_icmp,
        workers_validate=cfg.workers_validate,
        dry_run=cfg.dry_run,
    )


def dump_config(cfg: MigrationConfig) -> Dict[str, Any]:
    return {
        "outdir": str(cfg.outdir),
        "log_level": cfg.log_level,
        "json_logs": cfg.json_logs,
        "auth": cfg.auth,
        "tenant_id": cfg.tenant_id,
        "subscription_id": cfg.subscription_id,
        "subscription_name": cfg.subscription_name,
        "scan_all_subscriptions": cfg.scan_all_subscriptions,
        "include_subscriptions": list(cfg.include_subscriptions),
        "exclude_subscriptions": list(cfg.exclude_subscriptions),
        "batch_size": cfg.batch_size,
        "delay_between_batches_minutes": cfg.delay_between_batches_minutes,
        "soak_period_hours": cfg.soak_period_hours,
        "standard_allocation_method": cfg.standard_allocation_method,
        "address_version": cfg.address_version,
        "use_zones": cfg.use_zones,
        "zones": list(cfg.zones),
        "tag_key": cfg.tag_key,
        "tag_value": cfg.tag_value,
        "validation_ports": list(cfg.validation_ports),
        "validation_timeout_seconds": cfg.validation_timeout_seconds,
        "validation_icmp": cfg.validation_icmp,
        "workers_validate": cfg.workers_validate,
        "dry_run": cfg.dry_run,
        "inventory": str(cfg.inventory) if cfg.inventory else None,
    }
