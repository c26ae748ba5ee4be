"""
Metrics computed by the monitoring callback against the evaluation data.

A metric writes named scalars into the measurement table of the current
iteration. Metrics read the evaluation data and parameters, never modify them.
"""
import numpy as np
from sklearn.metrics import normalized_mutual_info_score

from dpmix.configs import Measurements, PredictiveParams
from dpmix.eval_data import EvalData


class NMI:
    """Normalized mutual information between ground-truth and predicted labels."""

    name = "nmi"

    def compute_(
        self,
        i: int,
        data: EvalData,
        params: PredictiveParams,
        measurements: Measurements
    ) -> None:
        # Nothing to compare against without ground truth
        if data.labels is None or data.n_points == 0:
            return
        predicted = params.predict(data.points)
        measurements[self.name] = float(
            normalized_mutual_info_score(np.asarray(data.labels), predicted)
        )


class LogLikelihood:
    """Mean per-point log density of the evaluation points under the mixture."""

    name = "loglik"

    def compute_(
        self,
        i: int,
        data: EvalData,
        params: PredictiveParams,
        measurements: Measurements
    ) -> None:
        if data.n_points == 0:
            return
        measurements[self.name] = float(params.log_likelihood(data.points))
