"""Result aggregation for one fleet run."""

import threading
from dataclasses import dataclass, field

from rich.table import Table

from agentfleet.models import InstallOutcome, RunnerResult


# Outcomes that count as "the agent is on the instance".
SUCCESS_OUTCOMES = (InstallOutcome.ALREADY_INSTALLED, InstallOutcome.INSTALLED)
FAILED_OUTCOMES = (InstallOutcome.ACCESS_FAILED, InstallOutcome.INSTALL_FAILED)


@dataclass
class FleetSummary:
    """Per-outcome counts and per-runner results of a run.

    ``record`` may be called from any worker; it is serialized by a lock so
    counts always add up to ``total``.

    Attributes:
        counts: Number of runners per outcome. Every outcome has a key.
        results: One RunnerResult per recorded runner, in completion order.
        teardown_errors: Problems met while removing managed-channel
            infrastructure. They never change the counts.
    """

    counts: dict[InstallOutcome, int] = field(default_factory=lambda: {o: 0 for o in InstallOutcome})
    results: list[RunnerResult] = field(default_factory=list)
    teardown_errors: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, result: RunnerResult) -> None:
        with self._lock:
            self.counts[result.outcome] += 1
            self.results.append(result)

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self.counts.values())

    @property
    def succeeded(self) -> int:
        return sum(self.counts[o] for o in SUCCESS_OUTCOMES)

    @property
    def failed(self) -> int:
        return sum(self.counts[o] for o in FAILED_OUTCOMES)

    def headline(self) -> str:
        """One or two lines for humans, e.g. ``Agent installed on 2 of 3 instances``."""
        text = f"Agent installed on {self.succeeded} of {self.total} instances"
        if self.failed:
            text += f"\n{self.failed} instance(s) failed"
        return text

    def to_dict(self) -> dict:
        """JSON-ready view of the run."""
        return {
            "total": self.total,
            "counts": {outcome.value: count for outcome, count in self.counts.items()},
            "results": [
                {
                    "provider": r.descriptor.provider.value,
                    "location": r.descriptor.location,
                    "instance_id": r.descriptor.instance_id,
                    "address": r.descriptor.address,
                    "outcome": r.outcome.value,
                    "method": r.method.value if r.method else None,
                    "detail": r.detail,
                }
                for r in self.results
            ],
            "teardown_errors": list(self.teardown_errors),
        }


def build_results_table(summary: FleetSummary) -> Table:
    """Render per-runner results as a rich table, sorted by location then id."""
    table = Table()
    table.add_column("Instance")
    table.add_column("Location")
    table.add_column("Address")
    table.add_column("Method")
    table.add_column("Outcome")
    table.add_column("Detail")

    ordered = sorted(summary.results, key=lambda r: (r.descriptor.location, r.descriptor.instance_id))
    for result in ordered:
        d = result.descriptor
        outcome = result.outcome.value
        if result.outcome in FAILED_OUTCOMES:
            outcome = f"[red]{outcome}[/red]"
        table.add_row(
            d.instance_id,
            d.location,
            d.address,
            result.method.value if result.method else "-",
            outcome,
            result.detail.splitlines()[0] if result.detail else "",
        )
    return table
