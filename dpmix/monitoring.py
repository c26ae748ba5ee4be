"""
Monitoring Component - ECS-style callback tracking named measurements of every fitting iteration.

CODING CONVENTION:
------------------
Functions with side effects or mutations have an underscore suffix (_).
Pure functions (no side effects, no mutations) have no underscore.

Examples:
- Pure: format_duration(), format_measures(), plot_measurements(), get_history()
- With side effects: before_step_() (clears state, runs children), after_step_() (logs),
  finalize_and_plot_() (file I/O, plotting)
"""
import logging
import time
from typing import Dict, List, NamedTuple, Optional, Sequence

import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from dpmix.callback import Callback
from dpmix.configs import Measurements, MetricProtocol, ThinParams
from dpmix.eval_data import EvalData
from dpmix.media import save_matplotlib_figure

plt.style.use('ggplot')

logger = logging.getLogger(__name__)

DURATION_UNITS = ((1.0, "s"), (1e-3, "ms"), (1e-6, "µs"))


class MeasurementRecord(NamedTuple):
    """Measurements of one finished iteration."""
    iteration: int
    elapsed: float
    measures: Dict[str, float]


def format_duration(seconds: float) -> str:
    """Pure function to format a duration with two decimals and an adaptive unit."""
    for scale, unit in DURATION_UNITS:
        if seconds >= scale:
            return f"{seconds / scale:.2f}{unit}"
    return f"{seconds * 1e9:.2f}ns"


def format_measures(measures: Measurements) -> str:
    """Pure function to render measurements as 'name=value' pairs."""
    return ", ".join(f"{name}={value:.4f}" for name, value in measures.items())


def format_step_line(i: int, elapsed: float, measures: Measurements) -> str:
    """Pure function to build the per-iteration summary line."""
    return f"Run iteration {i} in {format_duration(elapsed)}; {format_measures(measures)}"


def collect_names(history: Sequence[MeasurementRecord]) -> List[str]:
    """Pure function listing measurement names in order of first appearance."""
    names: List[str] = []
    for record in history:
        for name in record.measures:
            if name not in names:
                names.append(name)
    return names


def plot_measurements(
    history: Sequence[MeasurementRecord],
    names: Optional[Sequence[str]] = None,
    plot_title: str = "Fitting Progress",
) -> Figure:
    """
    Pure function to create a figure with one panel per measurement.

    Args:
        history: Recorded iterations
        names: Measurements to plot, all recorded names by default
        plot_title: Title of the figure

    Returns:
        matplotlib Figure object with the plot
    """
    names = list(names) if names is not None else collect_names(history)
    n_panels = max(len(names), 1)
    fig, axes = plt.subplots(n_panels, 1, figsize=(10, 3 * n_panels), sharex=True, squeeze=False)

    for ax, name in zip(axes[:, 0], names):
        points = [(r.iteration, r.measures[name]) for r in history if name in r.measures]
        if points:
            iterations, values = zip(*points)
            ax.plot(iterations, values, 'b-', marker='o', markersize=4, alpha=0.8)
        ax.set_ylabel(name)

    axes[-1, 0].set_xlabel('Iteration')
    fig.suptitle(plot_title)
    plt.tight_layout()
    return fig


class MonitoringCallback(Callback):
    """
    Callback collecting metrics at every step and optionally logging a summary line.
    Owns the evaluation data, its metrics and any child callbacks.
    """

    def __init__(self, data: EvalData, verbose: bool = False):
        """
        Args:
            data: Evaluation data the metrics are computed on
            verbose: Whether to log the measurements after every step
        """
        self.data = data
        self.metrics: List[MetricProtocol] = []
        self.callbacks: List[Callback] = []
        self.measures: Measurements = {}
        self.history: List[MeasurementRecord] = []
        self.step_started = time.perf_counter()
        self.verbose = verbose

    @classmethod
    def from_data(cls, data: EvalData) -> 'MonitoringCallback':
        return cls(data)

    def add_metric_(self, metric: MetricProtocol) -> None:
        """Register a metric. Metrics run in registration order."""
        self.metrics.append(metric)

    def add_callback_(self, callback: Callback) -> None:
        """Register a child callback. Children run in registration order."""
        self.callbacks.append(callback)

    def set_verbose_(self, verbose: bool) -> None:
        """Set the verbosity. True logs the measurements at each step."""
        self.verbose = verbose

    def before_step_(self, i: int) -> None:
        self.measures.clear()
        for callback in self.callbacks:
            callback.before_step_(i)
        # Children setup is not part of the step time
        self.step_started = time.perf_counter()

    def during_step_(self, i: int, params: ThinParams) -> None:
        self.measures["k"] = float(params.n_clusters())
        for metric in self.metrics:
            metric.compute_(i, self.data, params, self.measures)
        for callback in self.callbacks:
            callback.during_step_(i, params)

    def after_step_(self, i: int) -> None:
        for callback in self.callbacks:
            callback.after_step_(i)
        elapsed = time.perf_counter() - self.step_started
        self.history.append(MeasurementRecord(iteration=i, elapsed=elapsed, measures=dict(self.measures)))
        if self.verbose:
            logger.info(format_step_line(i, elapsed, self.measures))

    def get_history(self) -> List[MeasurementRecord]:
        """Get the recorded iterations."""
        return self.history.copy()

    def get_latest_measures(self) -> Optional[Dict[str, float]]:
        """Get the measurements of the most recent finished iteration."""
        return dict(self.history[-1].measures) if self.history else None

    def reset_(self) -> None:
        """Reset the recorded state (useful for multiple fitting runs). Mutates internal state."""
        self.measures.clear()
        self.history.clear()

    def finalize_and_plot_(
        self,
        filename: str = "measurements.png",
        output_dir: str = "outputs",
        names: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Plot the recorded measurements and save the figure. Has side effects (file I/O, plotting).

        Returns:
            Path of the saved figure

        Raises:
            ValueError: If no iteration has been recorded
        """
        if len(self.history) == 0:
            raise ValueError("No iterations recorded. Cannot generate plot.")
        fig = plot_measurements(self.history, names)
        try:
            path = save_matplotlib_figure(filename, fig, format='png', dpi=150, output_dir=output_dir)
        finally:
            plt.close(fig)
        logger.info(f"Measurement plot saved: {path}")
        return path
