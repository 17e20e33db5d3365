"""
Simulation Service

Application service orchestrating simulation runs: single runs, parallel
batches over seeds, A/B comparison of two designs and composed scenarios.

Architecture:
    caller
      └── SimulationService          <- this module
            ├── Simulator            (one per run)
            └── ScenarioComposer     (scenario compilation)

Runs never share state, so a batch can run on a thread pool.
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Union

from archsim.config.settings import Settings
from archsim.core.exceptions import ConfigurationError
from archsim.core.models import FaultInjection, SystemArchitecture, WorkloadProfile
from archsim.simulation.output import SimulationOutput
from archsim.simulation.scenarios import ComposedScenario, CompiledScenario, ScenarioComposer
from archsim.simulation.simulator import Simulator


@dataclass
class ComparisonReport:
    """Outcome of running two designs under the same workload and faults."""
    design_a_results: List[SimulationOutput]
    design_b_results: List[SimulationOutput]
    comparison: Dict[str, Any] = field(default_factory=dict)
    tradeoffs: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def winner(self) -> str:
        return self.comparison.get("winner", "tie")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "design_a_runs": [r.run_id for r in self.design_a_results],
            "design_b_runs": [r.run_id for r in self.design_b_results],
            "comparison": self.comparison,
            "tradeoffs": self.tradeoffs,
        }


def _headline(output: SimulationOutput) -> Dict[str, float]:
    g = output.metrics["global"]
    return {
        "p50": g["latency"]["p50"],
        "p99": g["latency"]["p99"],
        "throughput": g["throughput"]["requests_per_second"],
        "availability": g["availability"]["availability_percent"],
    }


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class SimulationService:
    """
    Application service for running simulations.

    Capabilities:
        - Single runs with an explicit or derived seed
        - Parallel batches over several seeds
        - A/B comparison of two architectures
        - Composed and built-in failure scenarios
    """

    # Metrics compared between designs; True when higher is better
    COMPARED_METRICS = {
        "p50": False,
        "p99": False,
        "throughput": True,
        "availability": True,
    }

    # Relative difference below which two designs count as equal on a metric
    TIE_TOLERANCE = 0.02

    def __init__(self, settings: Optional[Settings] = None,
                 predicates: Optional[Dict[str, Callable]] = None):
        self.settings = settings or Settings.from_env()
        self.predicates = dict(predicates or {})
        self.logger = logging.getLogger(__name__)

    # =========================================================================
    # Runs
    # =========================================================================

    def run(
        self,
        architecture: SystemArchitecture,
        workload: WorkloadProfile,
        faults: Optional[List[FaultInjection]] = None,
        seed: Optional[str] = None,
        **kwargs,
    ) -> SimulationOutput:
        """
        Run one simulation.

        Args:
            architecture: System under test
            workload: Traffic profile
            faults: Faults to inject
            seed: Seed string
            **kwargs: ``actions`` and ``duration_ms`` for the Simulator

        Returns:
            SimulationOutput of the run
        """
        simulator = Simulator(architecture, workload, faults, seed=seed, settings=self.settings,
                              predicates=self.predicates, **kwargs)
        return simulator.run()

    def run_many(
        self,
        architecture: SystemArchitecture,
        workload: WorkloadProfile,
        faults: Optional[List[FaultInjection]] = None,
        seeds: Optional[List[str]] = None,
        runs: int = 5,
        **kwargs,
    ) -> List[SimulationOutput]:
        """
        Run the same inputs under several seeds in parallel.

        Inputs are validated once up front, so a ConfigurationError surfaces
        before any worker starts. Outputs are returned in seed order.
        """
        seeds = list(seeds) if seeds else [f"seed-{i}" for i in range(runs)]
        simulators = [
            Simulator(architecture, workload, faults, seed=seed, settings=self.settings,
                      predicates=self.predicates, **kwargs)
            for seed in seeds
        ]
        workers = max(1, min(self.settings.worker_threads, len(simulators)))
        self.logger.info(f"Running {len(simulators)} simulations on {workers} worker(s)")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="archsim") as executor:
            futures = [executor.submit(s.run) for s in simulators]
            return [f.result() for f in futures]

    # =========================================================================
    # A/B Comparison
    # =========================================================================

    def compare(
        self,
        design_a: SystemArchitecture,
        design_b: SystemArchitecture,
        workload: WorkloadProfile,
        faults: Optional[List[FaultInjection]] = None,
        seeds: Optional[List[str]] = None,
        **kwargs,
    ) -> ComparisonReport:
        """
        Compare two designs under identical workload, faults and seeds.

        Differences are B minus A. The winner is the design that is better
        on more (seed, metric) pairs; confidence is the share of decided
        pairs that favor it.
        """
        seeds = list(seeds) if seeds else ["compare-0"]
        results_a = self.run_many(design_a, workload, faults, seeds=seeds, **kwargs)
        results_b = self.run_many(design_b, workload, faults, seeds=seeds, **kwargs)

        heads_a = [_headline(r) for r in results_a]
        heads_b = [_headline(r) for r in results_b]
        mean_a = {m: _mean([h[m] for h in heads_a]) for m in self.COMPARED_METRICS}
        mean_b = {m: _mean([h[m] for h in heads_b]) for m in self.COMPARED_METRICS}

        wins = {"A": 0, "B": 0}
        for head_a, head_b in zip(heads_a, heads_b):
            for metric, higher_is_better in self.COMPARED_METRICS.items():
                better = self._better(head_a[metric], head_b[metric], higher_is_better)
                if better:
                    wins[better] += 1

        decided = wins["A"] + wins["B"]
        if wins["A"] == wins["B"]:
            winner, confidence = "tie", 0.0
        else:
            winner = "A" if wins["A"] > wins["B"] else "B"
            confidence = wins[winner] / decided

        tradeoffs: Dict[str, List[str]] = {"a_advantages": [], "b_advantages": []}
        for metric, higher_is_better in self.COMPARED_METRICS.items():
            better = self._better(mean_a[metric], mean_b[metric], higher_is_better)
            if better == "A":
                tradeoffs["a_advantages"].append(f"{metric}: {mean_a[metric]:.2f} vs {mean_b[metric]:.2f}")
            elif better == "B":
                tradeoffs["b_advantages"].append(f"{metric}: {mean_b[metric]:.2f} vs {mean_a[metric]:.2f}")

        self.logger.info(f"Compared '{design_a.id}' and '{design_b.id}' over {len(seeds)} seed(s): "
                         f"winner={winner}, confidence={confidence:.2f}")
        return ComparisonReport(
            design_a_results=results_a,
            design_b_results=results_b,
            comparison={
                "latency_diff": {
                    "p50": mean_b["p50"] - mean_a["p50"],
                    "p99": mean_b["p99"] - mean_a["p99"],
                },
                "throughput_diff": mean_b["throughput"] - mean_a["throughput"],
                "availability_diff": mean_b["availability"] - mean_a["availability"],
                "winner": winner,
                "confidence": confidence,
            },
            tradeoffs=tradeoffs,
        )

    def _better(self, a: float, b: float, higher_is_better: bool) -> Optional[str]:
        scale = max(abs(a), abs(b))
        if scale == 0 or abs(a - b) / scale <= self.TIE_TOLERANCE:
            return None
        if higher_is_better:
            return "A" if a > b else "B"
        return "A" if a < b else "B"

    # =========================================================================
    # Scenarios
    # =========================================================================

    def compile_scenario(
        self,
        scenario: Union[ScenarioComposer, ComposedScenario],
        workload: Optional[WorkloadProfile] = None,
    ) -> CompiledScenario:
        composer = scenario if isinstance(scenario, ScenarioComposer) else ScenarioComposer.of(scenario)
        return composer.compile(workload)

    def run_scenario(
        self,
        architecture: SystemArchitecture,
        scenario: Union[ScenarioComposer, ComposedScenario],
        workload: Optional[WorkloadProfile] = None,
        seed: Optional[str] = None,
        extra_faults: Optional[List[FaultInjection]] = None,
        duration_ms: Optional[float] = None,
    ) -> SimulationOutput:
        """
        Compile a scenario and run it against an architecture.

        The scenario's assertions are added to the architecture's invariants
        (an invariant id already declared on the architecture wins).

        Raises:
            ConfigurationError: no workload given and the scenario sets none
        """
        plan = self.compile_scenario(scenario, workload)
        if plan.workload is None:
            raise ConfigurationError("Scenario run needs a workload: pass one or add a change-traffic step")

        declared = {inv.id for inv in architecture.invariants}
        invariants = list(architecture.invariants) + [inv for inv in plan.invariants if inv.id not in declared]
        target = replace(architecture, invariants=invariants)

        duration = duration_ms if duration_ms is not None else (plan.duration_ms or None)
        self.logger.info(f"Running scenario with {len(plan.faults)} fault(s), {len(plan.actions)} action(s) "
                         f"and {len(plan.invariants)} assertion(s)")
        return self.run(target, plan.workload, plan.faults + list(extra_faults or []), seed=seed,
                        actions=plan.actions, duration_ms=duration)
