"""Stop and start the service whose data is being backed up."""
from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from zpm.executor import Executor


def stop_services(units: Sequence[str], executor: "Executor") -> None:
    if units:
        executor.run(["systemctl", "stop", *units])


def start_services(units: Sequence[str], executor: "Executor") -> None:
    if units:
        executor.run(["systemctl", "start", *units])
