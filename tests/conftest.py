"""MockExecutor and shared fixtures for testing."""
from __future__ import annotations

import json

import pytest

from zpm.models import BlockDevice


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string (or an Exception to raise)
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).

    Pass is_verbose=True to print every command that goes through the executor.
    """

    def __init__(self, responses: dict | None = None, is_verbose: bool = False, label: str = "mock"):
        self.responses: dict = responses or {}
        self.verbose = is_verbose
        self._label = label
        self.calls: list[list[str]] = []  # record of all commands run

    @property
    def label(self) -> str:
        return self._label

    def run(self, cmd: list[str]) -> str:
        self.calls.append(cmd)
        key = tuple(cmd)
        if self.verbose:
            import shlex
            print(f"  [mock.run] {shlex.join(cmd)}")
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result


def make_disk(name: str, by_id: str | None = None) -> BlockDevice:
    """A disk whose canonical node is /dev/<name>, optionally with a by-id alias."""
    if by_id is None:
        return BlockDevice(id=name, path=f"/dev/{name}", canonical_path=f"/dev/{name}")
    return BlockDevice(
        id=by_id,
        path=f"/dev/disk/by-id/{by_id}",
        canonical_path=f"/dev/{name}",
    )


def lsblk_output(entries: list[tuple], children: dict | None = None) -> str:
    """
    JSON as printed by `lsblk -J -b -p -o PATH,SIZE,MODEL,TYPE`.

    entries: (path, size, model, type) top-level devices
    children: parent path -> list of entries nested under it
    """
    children = children or {}

    def node(path, size, model, type_):
        dev = {"path": path, "size": size, "model": model, "type": type_}
        if path in children:
            dev["children"] = [node(*child) for child in children[path]]
        return dev

    return json.dumps({"blockdevices": [node(*e) for e in entries]})


@pytest.fixture
def disks() -> list[BlockDevice]:
    """Eight by-id disks sda..sdh."""
    return [
        make_disk(f"sd{c}", by_id=f"ata-WDC_WD40EFRX_{c.upper()}")
        for c in "abcdefgh"
    ]
