#!/usr/bin/env python3
"""
Tests for the callback/metric framework: dpmix.callback, dpmix.metrics and dpmix.monitoring.
"""
import logging
import os
import time

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest
from matplotlib.figure import Figure

from dpmix.callback import Callback
from dpmix.eval_data import build_eval_data
from dpmix.metrics import NMI, LogLikelihood
from dpmix.monitoring import (
    MonitoringCallback,
    format_duration,
    format_measures,
    plot_measurements,
)


class FakeParams:
    """Thin parameters predicting label = first coordinate rounded."""

    def __init__(self, k: int = 3):
        self.k = k

    def n_clusters(self) -> int:
        return self.k

    def predict(self, points: np.ndarray) -> np.ndarray:
        return np.rint(points[0]).astype(np.int64)

    def log_likelihood(self, points: np.ndarray) -> float:
        return -1.5


class ConstantLoss:
    def compute_(self, i, data, params, measurements):
        measurements["loss"] = 1.0


class FailingMetric:
    def compute_(self, i, data, params, measurements):
        raise RuntimeError("metric failed")


class RecordingCallback(Callback):
    def __init__(self, name: str, log: list, parent: MonitoringCallback = None, setup_delay: float = 0.0):
        self.name = name
        self.log = log
        self.parent = parent
        self.setup_delay = setup_delay
        self.seen_measures = []

    def before_step_(self, i):
        if self.setup_delay:
            time.sleep(self.setup_delay)
        self.log.append((self.name, "before", i))

    def during_step_(self, i, params):
        self.log.append((self.name, "during", i))
        if self.parent is not None:
            self.seen_measures.append(dict(self.parent.measures))

    def after_step_(self, i):
        self.log.append((self.name, "after", i))


def make_eval_data(with_labels: bool = True):
    X = np.vstack([np.repeat(np.arange(3.0), 10), np.zeros(30)])
    y = np.repeat(np.arange(3), 10) if with_labels else None
    return build_eval_data(X, y, max_points=1000)


def run_step(monitor: MonitoringCallback, i: int, params=None) -> None:
    monitor.before_step_(i)
    monitor.during_step_(i, params or FakeParams())
    monitor.after_step_(i)


def test_base_callback_hooks_are_noops():
    callback = Callback()
    callback.before_step_(0)
    callback.during_step_(0, FakeParams())
    callback.after_step_(0)


def test_monitoring_output_line(caplog):
    print("=== Testing verbose monitoring output ===")
    monitor = MonitoringCallback(make_eval_data())
    monitor.add_metric_(ConstantLoss())
    monitor.set_verbose_(True)

    with caplog.at_level(logging.INFO, logger="dpmix.monitoring"):
        run_step(monitor, 0)

    lines = [r.getMessage() for r in caplog.records if r.name == "dpmix.monitoring"]
    print(lines)
    assert len(lines) == 1
    assert lines[0].startswith("Run iteration 0 in ")
    assert "k=3.0000" in lines[0]
    assert "loss=1.0000" in lines[0]


def test_quiet_monitoring_logs_nothing(caplog):
    monitor = MonitoringCallback(make_eval_data())
    monitor.add_metric_(ConstantLoss())
    with caplog.at_level(logging.INFO, logger="dpmix.monitoring"):
        run_step(monitor, 0)
    assert not [r for r in caplog.records if r.name == "dpmix.monitoring"]
    assert monitor.get_latest_measures() == {"k": 3.0, "loss": 1.0}


def test_before_step_clears_measurements():
    monitor = MonitoringCallback(make_eval_data())
    monitor.measures.update({"stale": 5.0, "k": 9.0})
    monitor.before_step_(1)
    assert monitor.measures == {}


def test_metrics_and_children_order():
    log = []
    monitor = MonitoringCallback(make_eval_data())
    monitor.add_metric_(ConstantLoss())
    first = RecordingCallback("first", log, parent=monitor)
    second = RecordingCallback("second", log)
    monitor.add_callback_(first)
    monitor.add_callback_(second)

    for i in range(2):
        run_step(monitor, i)

    assert log == [
        ("first", "before", 0), ("second", "before", 0),
        ("first", "during", 0), ("second", "during", 0),
        ("first", "after", 0), ("second", "after", 0),
        ("first", "before", 1), ("second", "before", 1),
        ("first", "during", 1), ("second", "during", 1),
        ("first", "after", 1), ("second", "after", 1),
    ]
    # Metrics run before children see the parameters
    assert first.seen_measures == [{"k": 3.0, "loss": 1.0}] * 2


def test_later_metric_overwrites_same_name():
    class OtherLoss:
        def compute_(self, i, data, params, measurements):
            measurements["loss"] = 2.0

    monitor = MonitoringCallback(make_eval_data())
    monitor.add_metric_(ConstantLoss())
    monitor.add_metric_(OtherLoss())
    run_step(monitor, 0)
    assert monitor.measures == {"k": 3.0, "loss": 2.0}


def test_step_time_excludes_child_setup():
    monitor = MonitoringCallback(make_eval_data())
    monitor.add_callback_(RecordingCallback("slow", [], setup_delay=0.2))
    run_step(monitor, 0)
    assert monitor.get_history()[0].elapsed < 0.2


def test_metric_failure_propagates():
    monitor = MonitoringCallback(make_eval_data())
    monitor.add_metric_(FailingMetric())
    monitor.before_step_(0)
    with pytest.raises(RuntimeError, match="metric failed"):
        monitor.during_step_(0, FakeParams())


def test_history_and_reset():
    monitor = MonitoringCallback.from_data(make_eval_data())
    assert monitor.get_latest_measures() is None
    for i in range(3):
        run_step(monitor, i, FakeParams(k=i + 1))
    history = monitor.get_history()
    assert [r.iteration for r in history] == [0, 1, 2]
    assert [r.measures["k"] for r in history] == [1.0, 2.0, 3.0]

    monitor.reset_()
    assert monitor.get_history() == []
    assert monitor.measures == {}


def test_nmi_metric():
    data = make_eval_data()
    measurements = {}
    NMI().compute_(0, data, FakeParams(), measurements)
    assert measurements["nmi"] == pytest.approx(1.0)

    measurements = {}
    NMI().compute_(0, make_eval_data(with_labels=False), FakeParams(), measurements)
    assert measurements == {}


def test_loglik_metric():
    measurements = {}
    LogLikelihood().compute_(0, make_eval_data(), FakeParams(), measurements)
    assert measurements == {"loglik": -1.5}


def test_metrics_do_not_mutate_eval_data():
    data = make_eval_data()
    before = data.points.copy()
    monitor = MonitoringCallback(data)
    monitor.add_metric_(NMI())
    monitor.add_metric_(LogLikelihood())
    run_step(monitor, 0)
    np.testing.assert_array_equal(data.points, before)
    assert not data.points.flags.writeable


@pytest.mark.parametrize("seconds,expected", [
    (1.5, "1.50s"),
    (0.0025, "2.50ms"),
    (3e-6, "3.00µs"),
    (5e-9, "5.00ns"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_format_measures():
    assert format_measures({"k": 3.0, "loss": 1.0}) == "k=3.0000, loss=1.0000"
    assert format_measures({}) == ""


def test_plot_measurements_and_save(tmp_path):
    monitor = MonitoringCallback(make_eval_data())
    monitor.add_metric_(ConstantLoss())
    with pytest.raises(ValueError):
        monitor.finalize_and_plot_(output_dir=str(tmp_path))

    for i in range(3):
        run_step(monitor, i)

    fig = plot_measurements(monitor.get_history())
    assert isinstance(fig, Figure)
    assert len(fig.axes) == 2

    path = monitor.finalize_and_plot_("progress.png", output_dir=str(tmp_path))
    assert path.endswith("progress.png")
    assert os.path.exists(path)
    assert path.startswith(str(tmp_path))
