"""
Multithreaded DPMM clustering of synthetic gaussian blobs.

The model starts from a handful of clusters and has to discover the number of
blobs on its own. A monitoring callback reports the cluster count, NMI against
the true labels and the log-likelihood on a fixed evaluation subsample.

CODING CONVENTION:
------------------
Functions with side effects or mutations have an underscore suffix (_).
Pure functions (no side effects, no mutations) have no underscore.

Examples:
- Pure: make_gaussian_blobs(), build_eval_data()
- Methods with side effects: model.fit_() (mutates state, calls callbacks), monitor.finalize_and_plot_()
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../..'))

import logging

from dpmix.configs import FitOptions, ModelOptions
from dpmix.datasets import make_gaussian_blobs
from dpmix.eval_data import build_eval_data
from dpmix.metrics import NMI, LogLikelihood
from dpmix.model import DPMM
from dpmix.monitoring import MonitoringCallback
from dpmix.prior import IsotropicNormal
from dpmix.random_utils import infinite_safe_keys

# Set up logging to output to console
logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)


if __name__ == "__main__":
    key_gen = infinite_safe_keys(7)
    data = make_gaussian_blobs(key_gen, n_samples=20000, n_clusters=7, d_x=2, spread=8.0)
    logger.info(f"Generated {data.n_samples} points in {data.d_x} dimensions from {data.n_clusters} blobs")

    dim = data.d_x
    model_options = ModelOptions.default(dim)._replace(
        prior=IsotropicNormal(dim, sigma2=1.0, tau2=64.0),
        alpha=100.0,
        outlier=None,
    )
    fit_options = FitOptions(init_clusters=10, iters=40, workers=10)

    model = DPMM.from_options(model_options)
    monitor = MonitoringCallback.from_data(build_eval_data(data.X, data.y, max_points=1000))
    monitor.add_metric_(NMI())
    monitor.add_metric_(LogLikelihood())
    monitor.set_verbose_(True)

    params = model.fit_(data.X, fit_options, monitor)
    logger.info(f"Found {params.n_clusters()} clusters, true number is {data.n_clusters}")
    logger.info(f"Final measurements: {monitor.get_latest_measures()}")

    monitor.finalize_and_plot_("dpmm_measurements.png")
