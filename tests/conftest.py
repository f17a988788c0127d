from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

import snapkeeper


class FakeGateway:
    """In-memory stand-in for qm/pvesh; renders listings in the tree shape."""

    def __init__(self, node: str = "pve") -> None:
        self.node = node
        self.snapshots: Dict[int, List[Tuple[str, str, str]]] = {}
        self.details: Dict[str, str] = {}
        self.resources: List[snapkeeper.Resource] = []
        self.fail_delete: Set[str] = set()
        self.fail_create = False
        self.calls: List[Tuple] = []

    def add(self, vmid: int, name: str, timestamp: str = "2024-01-01 00:00:00", description: str = "") -> None:
        self.snapshots.setdefault(vmid, []).append((name, timestamp, description))

    def names(self, vmid: int) -> List[str]:
        return [name for name, _, _ in self.snapshots.get(vmid, [])]

    def list_resources(self) -> List[snapkeeper.Resource]:
        return list(self.resources)

    def list_nodes(self) -> List[str]:
        return [self.node]

    def node_exists(self, node: str) -> bool:
        return node == self.node

    def list_snapshots(self, vmid: int) -> str:
        self.calls.append(("list", vmid))
        lines = []
        depth = 0
        for name, timestamp, description in self.snapshots.get(vmid, []):
            lines.append(f"{'  ' * depth}`-> {name:<28} {timestamp}     {description}".rstrip())
            depth += 1
        lines.append(f"{'  ' * depth}`-> current{' ' * 40}You are here!")
        return "\n".join(lines) + "\n"

    def create_snapshot(self, vmid: int, name: str, description: str) -> None:
        self.calls.append(("create", vmid, name))
        if self.fail_create:
            raise snapkeeper.GatewayError(f"Error: qm snapshot {vmid} {name} failed (code=255): busy")
        self.add(vmid, name, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), description)

    def delete_snapshot(self, vmid: int, name: str, force: bool = True) -> None:
        self.calls.append(("delete", vmid, name, force))
        if name in self.fail_delete:
            raise snapkeeper.GatewayError(f"Error: qm delsnapshot {vmid} {name} failed (code=2): locked")
        self.snapshots[vmid] = [row for row in self.snapshots.get(vmid, []) if row[0] != name]

    def get_snapshot_detail(self, vmid: int, name: str) -> Optional[str]:
        self.calls.append(("detail", vmid, name))
        return self.details.get(name)


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for handler in list(snapkeeper.logger.handlers):
        snapkeeper.logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def settings(tmp_path: Path) -> snapkeeper.Settings:
    return snapkeeper.Settings(
        node="pve",
        keep=5,
        cron_file=tmp_path / "cron.d" / "snapkeeper",
        script_dir=tmp_path / "bin",
        log_file=tmp_path / "log" / "snapkeeper.log",
        principal="root",
        delete_pause_seconds=2.0,
    )


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def manager(settings: snapkeeper.Settings, gateway: FakeGateway, sleeps: List[float]) -> snapkeeper.SnapshotManager:
    return snapkeeper.SnapshotManager(settings, gateway=gateway, sleep=sleeps.append)
