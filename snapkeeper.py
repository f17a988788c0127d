#!/usr/bin/env python3
"""
snapkeeper.py

Recurring, retention-bounded Proxmox VM snapshots registered with cron.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import shlex
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from croniter import CroniterBadDateError, croniter


DEFAULT_CONFIG = "/etc/snapkeeper.yaml"
DEFAULT_CRON_FILE = "/etc/cron.d/snapkeeper"
DEFAULT_SCRIPT_DIR = "/usr/local/bin"
DEFAULT_LOG_FILE = "/var/log/snapkeeper.log"
DEFAULT_NODE = "pve"
DEFAULT_KEEP = 5
DEFAULT_PRINCIPAL = "root"
DEFAULT_DELETE_PAUSE_SECONDS = 2.0
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_DESCRIPTION = "Snapshot created by snapkeeper"
PVE_STORAGE_CFG = "/etc/pve/storage.cfg"
MODULE_DIR = str(Path(__file__).resolve().parent)

ARTIFACT_PREFIX = "snapkeeper"
CURRENT_SNAPSHOT = "current"
NO_DESCRIPTION = "no description"
PLACEHOLDER_DESCRIPTIONS = {"", "no-description"}
NAME_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

NAMESPACE_RE = re.compile(r"^[A-Za-z0-9_-]+$")
HOUR_ONLY_RE = re.compile(r"^\d+$")
DAY_AT_HOUR_RE = re.compile(r"^([0-6])@(\d+)$")
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
ARTIFACT_NAME_RE = re.compile(rf"^{ARTIFACT_PREFIX}-(\d+)-([A-Za-z0-9_-]+)$")
KEEP_LITERAL_RE = re.compile(r"^KEEP = (\d+)\s*$", re.MULTILINE)

TIMESTAMP_PATTERN = r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}"
TREE_LINE_RE = re.compile(
    rf"^\s*`->\s+(?P<name>\S+)(?:\s+(?P<timestamp>{TIMESTAMP_PATTERN}))?(?:\s+(?P<description>.*?))?\s*$"
)
TABLE_LINE_RE = re.compile(
    rf"^\s*(?P<name>[^\s`]+)\s+(?P<timestamp>{TIMESTAMP_PATTERN})(?:\s+(?P<description>.*?))?\s*$"
)
INDEXED_TABLE_LINE_RE = re.compile(
    rf"^\s*\S+\s+(?P<name>\S+)\s+(?P<timestamp>{TIMESTAMP_PATTERN})(?:\s+(?P<description>.*?))?\s*$"
)

# (name, minimum, maximum) for each of the five cron fields.
CRON_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)
CONFIG_KEYS = {
    "node",
    "keep",
    "cron_file",
    "script_dir",
    "log_file",
    "principal",
    "delete_pause_seconds",
}


class SnapkeeperError(Exception):
    """Base error for snapkeeper."""


class ValidationError(SnapkeeperError):
    """Missing or malformed argument or config value."""


class ScheduleFormatError(ValidationError):
    """Schedule matches none of the accepted forms."""


class NotFoundError(SnapkeeperError):
    """Referenced job or snapshot does not exist."""


class GatewayError(SnapkeeperError):
    """A qm/pvesh call failed. Never retried."""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr


class RegistryCorruptionError(SnapkeeperError):
    """A cron line referencing a snapkeeper artifact could not be parsed."""

    def __init__(self, message: str, line_number: int, line: str) -> None:
        super().__init__(message)
        self.line_number = line_number
        self.line = line


logger = logging.getLogger("snapkeeper")


def setup_logging(log_file: Optional[str] = None, console: bool = True) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if console:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open log file %s: %s", log_file, exc)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    return logger


@dataclass(frozen=True)
class Settings:
    node: str = DEFAULT_NODE
    keep: int = DEFAULT_KEEP
    cron_file: Path = Path(DEFAULT_CRON_FILE)
    script_dir: Path = Path(DEFAULT_SCRIPT_DIR)
    log_file: Path = Path(DEFAULT_LOG_FILE)
    principal: str = DEFAULT_PRINCIPAL
    delete_pause_seconds: float = DEFAULT_DELETE_PAUSE_SECONDS

    def to_payload(self) -> Dict[str, Any]:
        return {
            "node": self.node,
            "keep": self.keep,
            "cron_file": str(self.cron_file),
            "script_dir": str(self.script_dir),
            "log_file": str(self.log_file),
            "principal": self.principal,
            "delete_pause_seconds": self.delete_pause_seconds,
        }


@dataclass(frozen=True)
class Resource:
    vmid: int
    name: str
    status: str
    node: str


@dataclass(frozen=True)
class Snapshot:
    name: str
    timestamp: str
    description: str


@dataclass(frozen=True)
class JobKey:
    vmid: int
    namespace: str

    def __str__(self) -> str:
        return f"{self.vmid}/{self.namespace}"


@dataclass(frozen=True)
class SnapshotJob:
    vmid: int
    namespace: str
    schedule: str
    keep: int
    node: str
    log_file: str
    pause_seconds: float = DEFAULT_DELETE_PAUSE_SECONDS

    @property
    def key(self) -> JobKey:
        return JobKey(self.vmid, self.namespace)


@dataclass(frozen=True)
class RegistryEntry:
    vmid: int
    namespace: str
    schedule: str
    keep: Optional[int]
    artifact_path: Path
    file_missing: bool = False

    @property
    def key(self) -> JobKey:
        return JobKey(self.vmid, self.namespace)


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ValidationError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: float, minimum: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ValidationError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str, default: Optional[str] = None) -> str:
    if value is None and default is not None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_path(value: Any, field_path: str, default: str) -> Path:
    text = ensure_str(value, field_path, default)
    # Paths end up as single tokens on a cron line.
    if any(char.isspace() for char in text):
        raise ValidationError(f'Error: {field_path} must not contain whitespace, got "{text}".')
    return Path(text)


def validate_vmid(value: Any) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f'Error: VM ID must be a positive integer, got "{value}".')
    return value


def validate_namespace(value: Any) -> str:
    if not isinstance(value, str) or not NAMESPACE_RE.match(value.strip()):
        raise ValidationError(
            f'Error: Snapshot prefix must match [A-Za-z0-9_-]+, got "{value}".'
        )
    return value.strip()


def validate_keep(value: Any) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f'Error: Number of snapshots to keep must be >= 1, got "{value}".')
    return value


def parse_settings(payload: Any, field_path: str = "config") -> Settings:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError(f"Error: Top-level {field_path} must be a mapping.")
    unknown = set(payload.keys()) - CONFIG_KEYS
    if unknown:
        raise ValidationError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")

    return Settings(
        node=ensure_str(payload.get("node"), f"{field_path}.node", DEFAULT_NODE),
        keep=ensure_int(payload.get("keep"), f"{field_path}.keep", DEFAULT_KEEP, 1),
        cron_file=ensure_path(payload.get("cron_file"), f"{field_path}.cron_file", DEFAULT_CRON_FILE),
        script_dir=ensure_path(payload.get("script_dir"), f"{field_path}.script_dir", DEFAULT_SCRIPT_DIR),
        log_file=ensure_path(payload.get("log_file"), f"{field_path}.log_file", DEFAULT_LOG_FILE),
        principal=ensure_str(payload.get("principal"), f"{field_path}.principal", DEFAULT_PRINCIPAL),
        delete_pause_seconds=ensure_number(
            payload.get("delete_pause_seconds"),
            f"{field_path}.delete_pause_seconds",
            DEFAULT_DELETE_PAUSE_SECONDS,
            0.0,
        ),
    )


def detect_node(gateway: "HypervisorGateway") -> Optional[str]:
    """Return the local short hostname when running on a Proxmox node that answers."""
    if not Path(PVE_STORAGE_CFG).exists():
        return None
    hostname = socket.gethostname().split(".", 1)[0]
    if hostname and gateway.node_exists(hostname):
        return hostname
    return None


def load_settings(config_path: Path) -> Settings:
    if not config_path.exists():
        node = detect_node(HypervisorGateway(DEFAULT_NODE)) or DEFAULT_NODE
        return Settings(node=node)
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValidationError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    except OSError as exc:
        raise ValidationError(f"Error: Cannot read config file {config_path}: {exc}") from exc
    return parse_settings(payload, str(config_path))


def save_settings(settings: Settings, config_path: Path) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    body = yaml.safe_dump(settings.to_payload(), sort_keys=False)
    config_path.write_text("# snapkeeper configuration\n" + body, encoding="utf-8")
    os.chmod(config_path, 0o600)
    logger.info("Configuration saved to %s", config_path)


def validate_cron_token(raw: str, field_path: str, min_value: int, max_value: int) -> str:
    token = raw.strip()
    if not token or not CRON_FIELD_RE.match(token):
        raise ScheduleFormatError(f'Error: Invalid cron token "{token}" at {field_path}.')

    for part in token.split(","):
        if not part:
            raise ScheduleFormatError(f'Error: Invalid cron token "{token}" at {field_path}.')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise ScheduleFormatError(f'Error: Invalid step "{part}" at {field_path}.')
            if base == "*":
                continue
            _validate_range_or_single(base, field_path, min_value, max_value)
            if int(step_str) > (max_value - min_value + 1):
                raise ScheduleFormatError(f'Error: Step "{step_str}" too large at {field_path}.')
            continue
        _validate_range_or_single(part, field_path, min_value, max_value)
    return token


def _validate_range_or_single(token: str, field_path: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit() or int(left) > int(right):
            raise ScheduleFormatError(f'Error: Invalid range "{token}" at {field_path}.')
        if int(left) < min_value or int(right) > max_value:
            raise ScheduleFormatError(
                f'Error: Range "{token}" out of bounds {min_value}-{max_value} at {field_path}.'
            )
        return
    if not token.isdigit():
        raise ScheduleFormatError(f'Error: Invalid token "{token}" at {field_path}.')
    value = int(token)
    if value < min_value or value > max_value:
        raise ScheduleFormatError(
            f'Error: Value "{value}" out of bounds {min_value}-{max_value} at {field_path}.'
        )


def _validate_cron_fields(fields: List[str], raw: str) -> str:
    if len(fields) != len(CRON_FIELDS):
        raise ScheduleFormatError(
            f'Error: Invalid cron schedule "{raw}": must have 5 fields separated by spaces.'
        )
    tokens = [
        validate_cron_token(token, f'{name} of schedule "{raw}"', minimum, maximum)
        for token, (name, minimum, maximum) in zip(fields, CRON_FIELDS)
    ]
    return " ".join(tokens)


def normalize_schedule(raw: Any) -> str:
    """Turn "H", "D@H" or a 5-field cron expression into a canonical cron expression."""
    if not isinstance(raw, str) or not raw.strip():
        raise ScheduleFormatError(f'Error: Invalid schedule "{raw}": a schedule is required.')
    text = raw.strip()
    fields = text.split()
    if len(fields) == len(CRON_FIELDS):
        canonical = _validate_cron_fields(fields, text)
        try:
            croniter(canonical, datetime.now()).get_next(datetime)
        except CroniterBadDateError as exc:
            raise ScheduleFormatError(
                f'Error: Invalid schedule "{text}": it never fires (e.g. day 31 in February).'
            ) from exc
        return canonical

    if HOUR_ONLY_RE.match(text):
        return _validate_cron_fields(["0", str(int(text)), "*", "*", "*"], text)

    match = DAY_AT_HOUR_RE.match(text)
    if match:
        day, hour = match.group(1), str(int(match.group(2)))
        return _validate_cron_fields(["0", hour, "*", "*", day], text)

    raise ScheduleFormatError(
        f'Error: Invalid schedule "{text}". Use a 5-field cron expression (e.g. "0 3 * * *"), '
        'an hour for daily runs (e.g. "3") or day@hour for weekly runs (e.g. "0@2").'
    )


def next_run_times(schedule: str, count: int, now: Optional[datetime] = None) -> List[datetime]:
    iterator = croniter(schedule, now or datetime.now())
    return [iterator.get_next(datetime) for _ in range(count)]


def generate_name(namespace: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime(NAME_TIMESTAMP_FORMAT)
    return f"{validate_namespace(namespace)}-{stamp}"


def in_namespace(name: str, namespace: str) -> bool:
    return re.fullmatch(rf"{re.escape(namespace)}-\d{{8}}-\d{{6}}", name) is not None


def filter_namespace(snapshots: List[Snapshot], namespace: str) -> List[Snapshot]:
    members = [snapshot for snapshot in snapshots if in_namespace(snapshot.name, namespace)]
    return sorted(members, key=lambda snapshot: snapshot.name)


def _row_from_match(match: Optional[re.Match[str]]) -> Optional[Snapshot]:
    if match is None:
        return None
    return Snapshot(
        name=match.group("name"),
        timestamp=match.group("timestamp") or "N/A",
        description=(match.group("description") or "").strip(),
    )


def detect_tree_row(line: str) -> Optional[Snapshot]:
    return _row_from_match(TREE_LINE_RE.match(line))


def detect_table_row(line: str) -> Optional[Snapshot]:
    return _row_from_match(TABLE_LINE_RE.match(line))


def detect_indexed_table_row(line: str) -> Optional[Snapshot]:
    return _row_from_match(INDEXED_TABLE_LINE_RE.match(line))


LISTING_DETECTORS: Tuple[Tuple[str, Callable[[str], Optional[Snapshot]]], ...] = (
    ("tree", detect_tree_row),
    ("table", detect_table_row),
    ("indexed-table", detect_indexed_table_row),
)


def parse_listing(
    raw: str,
    describe: Optional[Callable[[str], Optional[str]]] = None,
) -> List[Snapshot]:
    """Parse ``qm listsnapshot`` output into snapshot records.

    Each line goes through the shape detectors in order; lines no detector
    recognises are skipped. The ``current`` pointer is never returned. When
    the inline description is missing, ``describe(name)`` is asked once for
    that snapshot. Never raises on unexpected input.
    """
    snapshots: List[Snapshot] = []
    for line_number, line in enumerate((raw or "").splitlines(), start=1):
        if not line.strip():
            continue
        row: Optional[Snapshot] = None
        for _shape, detector in LISTING_DETECTORS:
            row = detector(line)
            if row is not None:
                break
        if row is None:
            logger.debug("Skipping unrecognised listing line %s: %r", line_number, line)
            continue
        if row.name == CURRENT_SNAPSHOT:
            continue

        description = row.description
        if description in PLACEHOLDER_DESCRIPTIONS and describe is not None:
            description = _describe_or_empty(describe, row.name)
        snapshots.append(replace(row, description=description or NO_DESCRIPTION))
    return snapshots


def _describe_or_empty(describe: Callable[[str], Optional[str]], name: str) -> str:
    try:
        return (describe(name) or "").strip()
    except GatewayError as exc:
        logger.debug("Detail lookup failed for snapshot %s: %s", name, exc)
        return ""


def select_prunable(names: List[str], keep: int) -> List[str]:
    """Oldest ``len(names) - keep`` names, oldest first."""
    keep = validate_keep(keep)
    ordered = sorted(names)
    excess = len(ordered) - keep
    if excess <= 0:
        return []
    return ordered[:excess]


def plan_prune(snapshots: List[Snapshot], namespace: str, keep: int) -> List[str]:
    members = filter_namespace(snapshots, namespace)
    return select_prunable([snapshot.name for snapshot in members], keep)


def delete_snapshots(
    gateway: "HypervisorGateway",
    vmid: int,
    names: List[str],
    pause_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[List[str], List[str]]:
    deleted: List[str] = []
    failed: List[str] = []
    for idx, name in enumerate(names):
        # qm misbehaves on back-to-back mutations of one VM.
        if idx and pause_seconds > 0:
            sleep(pause_seconds)
        logger.info("Deleting old snapshot %s from VM %s", name, vmid)
        try:
            gateway.delete_snapshot(vmid, name, force=True)
        except GatewayError as exc:
            logger.error("Failed to delete snapshot %s from VM %s: %s", name, vmid, exc)
            failed.append(name)
            continue
        deleted.append(name)
    return deleted, failed


class HypervisorGateway:
    """Synchronous wrapper over the Proxmox ``qm`` and ``pvesh`` commands."""

    def __init__(self, node: str = DEFAULT_NODE, timeout: Optional[int] = None) -> None:
        self.node = node
        self.timeout = timeout

    def _run(self, command: List[str]) -> str:
        command_text = " ".join(shlex.quote(arg) for arg in command)
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise GatewayError(f"Error: Required command not found: {command[0]}", command=command) from exc
        except subprocess.TimeoutExpired as exc:
            raise GatewayError(
                f"Error: {command_text} timed out after {self.timeout} seconds.", command=command
            ) from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise GatewayError(
                f"Error: {command_text} failed (code={result.returncode}): {stderr}",
                command=command,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result.stdout or ""

    def _get_json(self, path: str, *args: str) -> Any:
        output = self._run(["pvesh", "get", path, *args, "--output-format", "json"])
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise GatewayError(f"Error: pvesh returned invalid JSON for {path}: {exc}") from exc

    def list_resources(self) -> List[Resource]:
        payload = self._get_json("/cluster/resources", "--type", "vm")
        resources: List[Resource] = []
        for item in payload or []:
            if not isinstance(item, dict) or "vmid" not in item:
                continue
            resources.append(
                Resource(
                    vmid=int(item["vmid"]),
                    name=str(item.get("name", "")),
                    status=str(item.get("status", "unknown")),
                    node=str(item.get("node") or self.node),
                )
            )
        return sorted(resources, key=lambda resource: resource.vmid)

    def list_nodes(self) -> List[str]:
        payload = self._get_json("/nodes")
        return sorted(str(item["node"]) for item in payload or [] if isinstance(item, dict) and item.get("node"))

    def node_exists(self, node: str) -> bool:
        try:
            self._run(["pvesh", "get", f"/nodes/{node}", "--output-format", "json"])
        except GatewayError:
            return False
        return True

    def list_snapshots(self, vmid: int) -> str:
        return self._run(["qm", "listsnapshot", str(vmid)])

    def create_snapshot(self, vmid: int, name: str, description: str) -> None:
        self._run(["qm", "snapshot", str(vmid), name, "--description", description])

    def delete_snapshot(self, vmid: int, name: str, force: bool = True) -> None:
        command = ["qm", "delsnapshot", str(vmid), name]
        if force:
            command.append("--force")
        self._run(command)

    def get_snapshot_detail(self, vmid: int, name: str) -> Optional[str]:
        payload = self._get_json(f"/nodes/{self.node}/qemu/{vmid}/snapshot/{name}/config")
        if not isinstance(payload, dict):
            return None
        description = str(payload.get("description") or "").strip()
        return description or None


ARTIFACT_TEMPLATE = '''#!{python}
# Generated by snapkeeper for VM {vmid}, prefix "{namespace}".
# Schedule: {schedule}
# Rewritten on every "snapkeeper set-recurring {vmid} {namespace} ..."; do not edit.

import sys

sys.path.insert(0, {module_dir!r})

from snapkeeper import run_policy  # noqa: E402

VMID = {vmid}
NAMESPACE = {namespace!r}
KEEP = {keep}
NODE = {node!r}
LOG_FILE = {log_file!r}
PAUSE_SECONDS = {pause_seconds!r}

if __name__ == "__main__":
    raise SystemExit(
        run_policy(
            vmid=VMID,
            namespace=NAMESPACE,
            keep=KEEP,
            node=NODE,
            log_file=LOG_FILE,
            pause_seconds=PAUSE_SECONDS,
        )
    )
'''


def artifact_path(script_dir: Path, key: JobKey) -> Path:
    return Path(script_dir) / f"{ARTIFACT_PREFIX}-{key.vmid}-{key.namespace}"


def render_artifact(
    job: SnapshotJob,
    python: Optional[str] = None,
    module_dir: Optional[str] = None,
) -> str:
    return ARTIFACT_TEMPLATE.format(
        python=python or sys.executable,
        module_dir=module_dir or MODULE_DIR,
        vmid=job.vmid,
        namespace=job.namespace,
        schedule=job.schedule,
        keep=job.keep,
        node=job.node,
        log_file=job.log_file,
        pause_seconds=float(job.pause_seconds),
    )


def write_artifact(job: SnapshotJob, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_artifact(job), encoding="utf-8")
    os.chmod(path, 0o755)
    return path


def read_artifact_keep(path: Path) -> Optional[int]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    match = KEEP_LITERAL_RE.search(text)
    return int(match.group(1)) if match else None


def build_schedule_line(job: SnapshotJob, path: Path, principal: str = DEFAULT_PRINCIPAL) -> str:
    return f"{job.schedule} {principal} {path} > /dev/null 2>> {job.log_file}"


def run_policy(
    vmid: int,
    namespace: str,
    keep: int,
    node: str,
    log_file: str,
    pause_seconds: float = DEFAULT_DELETE_PAUSE_SECONDS,
    gateway: Optional[HypervisorGateway] = None,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Body of a generated artifact: snapshot once, then prune the namespace to ``keep``."""
    setup_logging(log_file)
    gateway = gateway or HypervisorGateway(node=node)
    started = now or datetime.now()
    name = generate_name(namespace, started)

    logger.info("Creating snapshot %s for VM %s", name, vmid)
    try:
        gateway.create_snapshot(vmid, name, f"Auto snapshot created at {started:%Y-%m-%d %H:%M:%S}")
    except GatewayError as exc:
        logger.error("Snapshot %s for VM %s failed: %s", name, vmid, exc)
        return 1
    logger.info("Snapshot %s created for VM %s", name, vmid)

    logger.info("Pruning old snapshots for VM %s, keeping %s most recent with prefix %s", vmid, keep, namespace)
    try:
        listing = gateway.list_snapshots(vmid)
    except GatewayError as exc:
        logger.error("Listing snapshots for VM %s failed; skipping prune: %s", vmid, exc)
        return 1

    prunable = plan_prune(parse_listing(listing), namespace, keep)
    if prunable:
        logger.info("Need to delete %s snapshot(s)", len(prunable))
    _, failed = delete_snapshots(gateway, vmid, prunable, pause_seconds, sleep=sleep)
    logger.info("Snapshot maintenance complete for VM %s", vmid)
    return 1 if failed else 0


class JobRegistry:
    """Cron-file backed store holding at most one line per job key.

    Comment, blank and environment lines are preserved. Nothing here locks
    the file; concurrent writers race and the last one wins.
    """

    def __init__(self, cron_file: Path, script_dir: Path) -> None:
        self.cron_file = Path(cron_file)
        self.script_dir = Path(script_dir)
        self.errors: List[RegistryCorruptionError] = []

    def artifact_path(self, key: JobKey) -> Path:
        return artifact_path(self.script_dir, key)

    def _read_lines(self) -> List[str]:
        if not self.cron_file.exists():
            return []
        return self.cron_file.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: List[str]) -> None:
        self.cron_file.parent.mkdir(parents=True, exist_ok=True)
        # cron skips dotted names in cron.d, so the staging file is never picked up.
        staging = self.cron_file.with_name(f".{self.cron_file.name}.tmp")
        staging.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        os.chmod(staging, 0o644)
        os.replace(staging, self.cron_file)

    @staticmethod
    def _references(line: str, target: str) -> bool:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return False
        return target in stripped.split()

    def upsert(self, key: JobKey, line: str) -> None:
        target = str(self.artifact_path(key))
        kept = [existing for existing in self._read_lines() if not self._references(existing, target)]
        kept.append(line.strip())
        self._write_lines(kept)

    def remove(self, key: JobKey) -> None:
        if not self.cron_file.exists():
            raise NotFoundError("Error: No recurring snapshots configured.")
        target = str(self.artifact_path(key))
        lines = self._read_lines()
        kept = [line for line in lines if not self._references(line, target)]
        if len(kept) == len(lines):
            raise NotFoundError(
                f'Error: No recurring snapshot found for VM {key.vmid} with prefix "{key.namespace}".'
            )
        self._write_lines(kept)
        Path(target).unlink(missing_ok=True)

    def list_entries(self) -> List[RegistryEntry]:
        self.errors = []
        entries: List[RegistryEntry] = []
        for line_number, line in enumerate(self._read_lines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            tokens = stripped.split()
            if not any(ARTIFACT_NAME_RE.match(Path(token).name) for token in tokens):
                continue
            try:
                entries.append(self._parse_entry(tokens, line_number, stripped))
            except RegistryCorruptionError as exc:
                self.errors.append(exc)
                logger.warning("%s", exc)
        return entries

    def _parse_entry(self, tokens: List[str], line_number: int, line: str) -> RegistryEntry:
        corrupt = RegistryCorruptionError(
            f"Error: Unparsable registry line {line_number} in {self.cron_file}: {line}",
            line_number,
            line,
        )
        if len(tokens) < 7:
            raise corrupt
        path = Path(tokens[6])
        match = ARTIFACT_NAME_RE.match(path.name)
        if not match:
            raise corrupt
        try:
            schedule = _validate_cron_fields(tokens[:5], " ".join(tokens[:5]))
        except ScheduleFormatError as exc:
            raise corrupt from exc

        missing = not path.exists()
        return RegistryEntry(
            vmid=int(match.group(1)),
            namespace=match.group(2),
            schedule=schedule,
            keep=None if missing else read_artifact_keep(path),
            artifact_path=path,
            file_missing=missing,
        )


def _ensure_log_file(log_file: Path) -> None:
    if log_file.exists():
        return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_file.touch()
    os.chmod(log_file, 0o644)


class SnapshotManager:
    """Every operator action; the CLI and the menu only call into this."""

    def __init__(
        self,
        settings: Settings,
        gateway: Optional[HypervisorGateway] = None,
        registry: Optional[JobRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.gateway = gateway or HypervisorGateway(node=settings.node)
        self.registry = registry or JobRegistry(settings.cron_file, settings.script_dir)
        self.sleep = sleep

    def list_resources(self) -> List[Resource]:
        return self.gateway.list_resources()

    def list_snapshots(self, vmid: Any) -> List[Snapshot]:
        vmid = validate_vmid(vmid)
        raw = self.gateway.list_snapshots(vmid)
        return parse_listing(raw, describe=lambda name: self.gateway.get_snapshot_detail(vmid, name))

    def create_snapshot(self, vmid: Any, name: Any, description: Optional[str] = None) -> None:
        vmid = validate_vmid(vmid)
        name = ensure_str(name, "snapshot name")
        logger.info("Creating snapshot '%s' for VM %s...", name, vmid)
        self.gateway.create_snapshot(vmid, name, description or DEFAULT_DESCRIPTION)
        logger.info("Snapshot '%s' created for VM %s", name, vmid)

    def delete_snapshot(self, vmid: Any, name: Any) -> None:
        vmid = validate_vmid(vmid)
        name = ensure_str(name, "snapshot name")
        existing = {snapshot.name for snapshot in parse_listing(self.gateway.list_snapshots(vmid))}
        if name not in existing:
            raise NotFoundError(f"Error: Snapshot '{name}' not found on VM {vmid}.")
        logger.info("Deleting snapshot '%s' from VM %s...", name, vmid)
        self.gateway.delete_snapshot(vmid, name, force=False)
        logger.info("Snapshot '%s' deleted from VM %s", name, vmid)

    def set_recurring(self, vmid: Any, namespace: Any, schedule: Any, keep: Any = None) -> SnapshotJob:
        vmid = validate_vmid(vmid)
        namespace = validate_namespace(namespace)
        canonical = normalize_schedule(schedule)
        if canonical != str(schedule).strip():
            logger.info('Interpreted schedule "%s" as "%s"', str(schedule).strip(), canonical)
        job = SnapshotJob(
            vmid=vmid,
            namespace=namespace,
            schedule=canonical,
            keep=self.settings.keep if keep is None else validate_keep(keep),
            node=self.settings.node,
            log_file=str(self.settings.log_file),
            pause_seconds=self.settings.delete_pause_seconds,
        )
        path = write_artifact(job, self.registry.artifact_path(job.key))
        self.registry.upsert(job.key, build_schedule_line(job, path, self.settings.principal))
        _ensure_log_file(self.settings.log_file)
        logger.info(
            "Recurring snapshot set up for VM %s (prefix=%s, schedule=%s, keep=%s)",
            vmid,
            namespace,
            canonical,
            job.keep,
        )
        return job

    def run_job(self, job: SnapshotJob, now: Optional[datetime] = None) -> int:
        return run_policy(
            vmid=job.vmid,
            namespace=job.namespace,
            keep=job.keep,
            node=job.node,
            log_file=job.log_file,
            pause_seconds=job.pause_seconds,
            gateway=self.gateway,
            now=now,
            sleep=self.sleep,
        )

    def list_recurring(self) -> List[RegistryEntry]:
        return self.registry.list_entries()

    def delete_recurring(self, vmid: Any, namespace: Any, delete_all: bool = False) -> List[str]:
        key = JobKey(validate_vmid(vmid), validate_namespace(namespace))
        self.registry.remove(key)
        logger.info("Recurring snapshot for VM %s with prefix '%s' deleted", key.vmid, key.namespace)
        if not delete_all:
            return []

        members = filter_namespace(parse_listing(self.gateway.list_snapshots(key.vmid)), key.namespace)
        if not members:
            logger.warning("No snapshots found with prefix '%s'", key.namespace)
            return []
        logger.info("Found %s snapshot(s) to delete.", len(members))
        deleted, failed = delete_snapshots(
            self.gateway,
            key.vmid,
            [snapshot.name for snapshot in members],
            self.settings.delete_pause_seconds,
            sleep=self.sleep,
        )
        if failed:
            raise GatewayError(
                f"Error: Failed to delete {len(failed)} snapshot(s) with prefix '{key.namespace}': "
                + ", ".join(failed)
            )
        logger.info("All snapshots with prefix '%s' have been deleted", key.namespace)
        return deleted


def print_resources(resources: List[Resource]) -> None:
    print(f"{'VMID':<8} {'NAME':<30} {'STATUS':<20} {'NODE':<10}")
    print(f"{'----':<8} {'----':<30} {'------':<20} {'----':<10}")
    for resource in resources:
        print(f"{resource.vmid:<8} {resource.name:<30} {resource.status:<20} {resource.node:<10}")


def print_snapshots(vmid: int, snapshots: List[Snapshot]) -> None:
    print(f"Snapshots for VM {vmid}:")
    if not snapshots:
        print("No snapshots found.")
        return
    print(f"{'NAME':<30} {'CREATED':<20} {'DESCRIPTION':<40}")
    print(f"{'----':<30} {'-------':<20} {'-----------':<40}")
    for snapshot in snapshots:
        print(f"{snapshot.name:<30} {snapshot.timestamp:<20} {snapshot.description:<40}")


def print_recurring(entries: List[RegistryEntry], now: Optional[datetime] = None) -> None:
    if not entries:
        print("No recurring snapshots configured.")
        return
    print(f"{'VMID':<8} {'PREFIX':<20} {'SCHEDULE':<16} {'KEEP':<6} {'NEXT RUN':<20} SCRIPT")
    for entry in entries:
        keep = "N/A" if entry.keep is None else str(entry.keep)
        try:
            next_run = next_run_times(entry.schedule, 1, now=now)[0].strftime("%Y-%m-%d %H:%M")
        except CroniterBadDateError:
            next_run = "N/A"
        script = f"{entry.artifact_path} (file missing)" if entry.file_missing else str(entry.artifact_path)
        print(f"{entry.vmid:<8} {entry.namespace:<20} {entry.schedule:<16} {keep:<6} {next_run:<20} {script}")


def command_init(
    config_path: Path,
    manager: SnapshotManager,
    input_fn: Callable[[str], str] = input,
) -> int:
    print("snapkeeper setup")
    try:
        nodes = manager.gateway.list_nodes()
    except GatewayError as exc:
        logger.warning("Could not list cluster nodes: %s", exc)
        nodes = []
    if nodes:
        print("Available nodes on this Proxmox cluster:")
        for node in nodes:
            print(f"  - {node}")

    current = manager.settings
    node = input_fn(f"Node name [{current.node}]: ").strip() or current.node
    keep_raw = input_fn(f"Default snapshots to keep [{current.keep}]: ").strip()
    keep = validate_keep(keep_raw) if keep_raw else current.keep

    updated = replace(current, node=node, keep=keep)
    save_settings(updated, config_path)
    manager.settings = updated
    manager.gateway.node = node

    if manager.gateway.node_exists(node):
        logger.info("Successfully verified node %s", node)
    else:
        logger.warning("Could not access node %s. Please check the node name.", node)
    return 0


def command_preview(schedule: str, count: int, now: Optional[datetime] = None) -> int:
    canonical = normalize_schedule(schedule)
    print(f"Schedule: {canonical}")
    print(f"Next {count} run(s):")
    for run_at in next_run_times(canonical, count, now=now):
        print(f"- {run_at.strftime('%Y-%m-%d %H:%M')}")
    return 0


def command_set_recurring(manager: SnapshotManager, args: argparse.Namespace) -> int:
    job = manager.set_recurring(args.vmid, args.prefix, args.schedule, args.keep)
    print(f"Schedule: {job.schedule}")
    print(f"Name prefix: {job.namespace}")
    print(f"Keep last: {job.keep} snapshots")
    if args.no_initial:
        return 0
    logger.info("Creating initial snapshot for VM %s", job.vmid)
    return manager.run_job(job)


def command_list_recurring(manager: SnapshotManager) -> int:
    print("Recurring Snapshots:")
    print_recurring(manager.list_recurring())
    return 0


MAIN_MENU = """Main Menu:
1) List Virtual Machines
2) Manage Snapshots
3) Configure Recurring Snapshots
4) View Configured Recurring Snapshots
5) Change Configuration
q) Quit"""

SCHEDULE_HELP = """Examples of schedules:
 - Daily at 3 AM: 0 3 * * *
 - Weekly on Sunday at 2 AM: 0 2 * * 0
 - Monthly on the 1st at 1 AM: 0 1 1 * *
 - Or simply enter a number (e.g. '3') for daily at that hour
 - Or day@hour (e.g. '0@2') for weekly on that day at that hour"""


def _confirm(input_fn: Callable[[str], str], prompt: str) -> bool:
    return input_fn(f"{prompt} (y/N): ").strip().lower() == "y"


def _menu_list_vms(manager: SnapshotManager, input_fn: Callable[[str], str]) -> None:
    print_resources(manager.list_resources())


def _menu_manage_snapshots(manager: SnapshotManager, input_fn: Callable[[str], str]) -> None:
    vmid = input_fn("Enter VM ID: ").strip()
    if not vmid:
        return
    print_snapshots(validate_vmid(vmid), manager.list_snapshots(vmid))
    print("1) Create Snapshot\n2) Delete Snapshot\n3) Return to main menu")
    choice = input_fn("Select an option: ").strip()
    if choice == "1":
        name = input_fn("Snapshot name: ").strip()
        description = input_fn("Description (optional): ").strip()
        manager.create_snapshot(vmid, name, description or None)
    elif choice == "2":
        name = input_fn("Enter snapshot name to delete: ").strip()
        if name and _confirm(input_fn, f"Are you sure you want to delete snapshot '{name}'?"):
            manager.delete_snapshot(vmid, name)


def _menu_set_recurring(manager: SnapshotManager, input_fn: Callable[[str], str]) -> None:
    vmid = input_fn("Enter VM ID for recurring snapshot: ").strip()
    if not vmid:
        return
    print(SCHEDULE_HELP)
    prefix = input_fn("Snapshot name prefix: ").strip()
    schedule = input_fn("Schedule: ").strip()
    keep = input_fn(f"Number of snapshots to keep [{manager.settings.keep}]: ").strip()
    job = manager.set_recurring(vmid, prefix, schedule, keep or None)
    if _confirm(input_fn, "Do you want to create an initial snapshot now?"):
        manager.run_job(job)


def _menu_recurring(manager: SnapshotManager, input_fn: Callable[[str], str]) -> None:
    print_recurring(manager.list_recurring())
    print("1) Delete a recurring snapshot\n2) Return to main menu")
    if input_fn("Select an option: ").strip() != "1":
        return
    vmid = input_fn("Enter VM ID: ").strip()
    prefix = input_fn("Enter snapshot prefix: ").strip()
    if not vmid or not prefix:
        return
    if not _confirm(input_fn, "Are you sure you want to delete this recurring snapshot?"):
        return
    delete_all = _confirm(input_fn, f"Do you also want to delete all snapshots with prefix '{prefix}'?")
    manager.delete_recurring(vmid, prefix, delete_all=delete_all)


def run_console(
    manager: SnapshotManager,
    config_path: Path,
    input_fn: Callable[[str], str] = input,
) -> int:
    actions: Dict[str, Callable[[SnapshotManager, Callable[[str], str]], Any]] = {
        "1": _menu_list_vms,
        "2": _menu_manage_snapshots,
        "3": _menu_set_recurring,
        "4": _menu_recurring,
        "5": lambda mgr, ask: command_init(config_path, mgr, ask),
    }
    while True:
        print("=" * 42)
        print("snapkeeper")
        print(f"Node: {manager.settings.node}")
        print(MAIN_MENU)
        try:
            choice = input_fn("Select an option: ").strip().lower()
        except EOFError:
            return 0
        if choice == "q":
            print("Exiting snapkeeper")
            return 0
        action = actions.get(choice)
        if action is None:
            logger.warning("Invalid option: %s", choice)
            continue
        try:
            action(manager, input_fn)
        except EOFError:
            return 0
        except SnapkeeperError as exc:
            logger.error(str(exc))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage Proxmox VM snapshots and recurring, retention-bounded snapshot jobs.",
        epilog="If no command is given, the interactive menu is shown.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to snapkeeper YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Configure node and default retention")
    subparsers.add_parser("menu", help="Show the interactive menu")
    subparsers.add_parser("list-vms", help="List all virtual machines")

    list_snapshots_parser = subparsers.add_parser("list-snapshots", help="List snapshots for a VM")
    list_snapshots_parser.add_argument("vmid")

    create_parser = subparsers.add_parser("create-snapshot", help="Create a snapshot")
    create_parser.add_argument("vmid")
    create_parser.add_argument("name")
    create_parser.add_argument("description", nargs="?", default=None)

    delete_parser = subparsers.add_parser("delete-snapshot", help="Delete a snapshot")
    delete_parser.add_argument("vmid")
    delete_parser.add_argument("name")

    set_parser = subparsers.add_parser("set-recurring", help="Set up a recurring snapshot")
    set_parser.add_argument("vmid")
    set_parser.add_argument("prefix")
    set_parser.add_argument("schedule", help='Cron expression, hour ("3") or day@hour ("0@2")')
    set_parser.add_argument("keep", nargs="?", default=None, help="Snapshots to keep (default from config)")
    set_parser.add_argument(
        "--no-initial",
        action="store_true",
        help="Do not take an initial snapshot right away",
    )

    subparsers.add_parser("list-recurring", help="List all recurring snapshots")

    delete_recurring_parser = subparsers.add_parser("delete-recurring", help="Delete a recurring snapshot")
    delete_recurring_parser.add_argument("vmid")
    delete_recurring_parser.add_argument("prefix")
    delete_recurring_parser.add_argument(
        "--delete-all",
        action="store_true",
        help="Also delete every existing snapshot with this prefix",
    )

    preview_parser = subparsers.add_parser("preview", help="Show the next run times of a schedule")
    preview_parser.add_argument("schedule")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config)

    try:
        if args.command == "preview":
            if args.count <= 0:
                raise ValidationError("Error: --count must be >= 1")
            return command_preview(args.schedule, args.count)

        settings = load_settings(config_path)
        setup_logging(str(settings.log_file))
        manager = SnapshotManager(settings)

        if args.command in (None, "menu"):
            return run_console(manager, config_path)
        if args.command == "init":
            return command_init(config_path, manager)
        if args.command == "list-vms":
            print_resources(manager.list_resources())
            return 0
        if args.command == "list-snapshots":
            print_snapshots(validate_vmid(args.vmid), manager.list_snapshots(args.vmid))
            return 0
        if args.command == "create-snapshot":
            manager.create_snapshot(args.vmid, args.name, args.description)
            return 0
        if args.command == "delete-snapshot":
            manager.delete_snapshot(args.vmid, args.name)
            return 0
        if args.command == "set-recurring":
            return command_set_recurring(manager, args)
        if args.command == "list-recurring":
            return command_list_recurring(manager)
        if args.command == "delete-recurring":
            manager.delete_recurring(args.vmid, args.prefix, delete_all=args.delete_all)
            return 0
        raise ValidationError(f"Error: Unsupported command: {args.command}")
    except SnapkeeperError as exc:
        logger.error(str(exc))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
