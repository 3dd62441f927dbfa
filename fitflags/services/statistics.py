"""
Per-variant statistics and winner detection.

Binary (first-occurrence) metrics use the Wald interval for a binomial
proportion and a pooled two-proportion z-test against control. Accumulating
metrics are treated as a per-user mean with a normal interval from the
per-user variance and a Welch-style z-test.

Only the aggregates exposed by the store are read; evaluation and assignment
never wait on anything in this module.
"""

import logging
from datetime import datetime, timedelta
from math import sqrt
from statistics import NormalDist
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fitflags.config import settings
from fitflags.errors import NotFoundError
from fitflags.models import (
    CONTROL_VARIANT,
    EventSemantics,
    Experiment,
    ExperimentStatus,
    StatisticsSnapshot,
)
from fitflags.schemas import ExperimentStatisticsResponse, VariantStatistics
from fitflags.store import Store

logger = logging.getLogger(__name__)


def z_for_confidence(confidence_level: float) -> float:
    """Two-sided critical value, e.g. 1.96 for 0.95."""
    return NormalDist().inv_cdf(0.5 + confidence_level / 2)


def _two_sided_p_from_z(z: float) -> float:
    return 2.0 * (1.0 - NormalDist().cdf(abs(z)))


def wald_interval(rate: float, n: int, z: float) -> tuple:
    if n <= 0:
        return (0.0, 0.0)
    margin = z * sqrt(max(rate * (1.0 - rate), 0.0) / n)
    return (max(0.0, rate - margin), min(1.0, rate + margin))


def mean_interval(mean: float, variance: float, n: int, z: float) -> tuple:
    if n <= 0:
        return (0.0, 0.0)
    margin = z * sqrt(max(variance, 0.0) / n)
    return (mean - margin, mean + margin)


def population_variance(values, n: int, mean: float) -> float:
    """
    Variance of per-user totals over n participants.

    values holds the totals of users with at least one event; the remaining
    n - len(values) participants contribute zeros. Deviations are summed
    around the mean so large totals keep their precision.
    """
    if n <= 0:
        return 0.0
    spread = sum((v - mean) ** 2 for v in values) + (n - len(values)) * mean * mean
    return spread / n


def two_proportion_p_value(x_c: float, n_c: int, x_t: float, n_t: int) -> Optional[float]:
    # Pooled standard error under H0: p_c == p_t
    if n_c <= 0 or n_t <= 0:
        return None
    p_pool = (x_c + x_t) / (n_c + n_t)
    se = sqrt(max(p_pool * (1.0 - p_pool) * (1.0 / n_c + 1.0 / n_t), 0.0))
    if se == 0:
        return 1.0
    z = (x_t / n_t - x_c / n_c) / se
    return _two_sided_p_from_z(z)


def welch_p_value(mean_c, var_c, n_c, mean_t, var_t, n_t) -> Optional[float]:
    if n_c <= 0 or n_t <= 0:
        return None
    se = sqrt(max(var_c / n_c + var_t / n_t, 0.0))
    if se == 0:
        return 1.0
    return _two_sided_p_from_z((mean_t - mean_c) / se)


class StatisticsEngine:

    def __init__(self, store: Store, confidence_level: Optional[float] = None, min_sample_size: Optional[int] = None):
        self.store = store
        self.confidence_level = confidence_level if confidence_level is not None else settings.confidence_level
        self.min_sample_size = min_sample_size if min_sample_size is not None else settings.min_sample_size
        self.z = z_for_confidence(self.confidence_level)

    def _get_experiment(self, experiment_id: int) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def compute_statistics(self, experiment_id: int) -> List[VariantStatistics]:
        """Statistics for every declared variant, in declared order."""
        experiment = self._get_experiment(experiment_id)
        metric = experiment.success_metric
        participants = self.store.count_assignments_by_variant(experiment_id)

        definition = self.store.get_event_type(metric)
        semantics = definition.semantics if definition is not None else EventSemantics.FIRST_OCCURRENCE

        if semantics == EventSemantics.ACCUMULATING:
            return self._accumulating_statistics(experiment, participants)
        return self._binary_statistics(experiment, participants)

    def _binary_statistics(self, experiment, participants):
        converters = self.store.count_converters_by_variant(experiment.id, experiment.success_metric)
        control_n = participants.get(CONTROL_VARIANT, 0)
        control_x = min(converters.get(CONTROL_VARIANT, 0), control_n)

        results = []
        for name in experiment.variant_names:
            n = participants.get(name, 0)
            x = min(converters.get(name, 0), n)
            rate = x / n if n > 0 else 0.0
            lower, upper = wald_interval(rate, n, self.z)
            p_value = None
            if name != CONTROL_VARIANT:
                p_value = two_proportion_p_value(control_x, control_n, x, n)
            results.append(VariantStatistics(
                variant=name,
                participant_count=n,
                conversion_count=x,
                conversion_rate=rate,
                confidence_interval=[lower, upper],
                p_value=p_value,
            ))
        return results

    def _accumulating_statistics(self, experiment, participants):
        totals = self.store.user_totals_by_variant(experiment.id, experiment.success_metric)

        moments = {}
        for name in experiment.variant_names:
            n = participants.get(name, 0)
            values = list(totals.get(name, {}).values())
            total = sum(values)
            mean = total / n if n > 0 else 0.0
            variance = population_variance(values, n, mean)
            moments[name] = (n, total, mean, variance)

        control = moments.get(CONTROL_VARIANT)
        results = []
        for name in experiment.variant_names:
            n, total, mean, variance = moments[name]
            lower, upper = mean_interval(mean, variance, n, self.z)
            p_value = None
            if name != CONTROL_VARIANT and control is not None:
                c_n, _, c_mean, c_var = control
                p_value = welch_p_value(c_mean, c_var, c_n, mean, variance, n)
            results.append(VariantStatistics(
                variant=name,
                participant_count=n,
                conversion_count=total,
                conversion_rate=mean,
                confidence_interval=[lower, upper],
                p_value=p_value,
            ))
        return results

    def detect_winner(self, experiment_id: int) -> Optional[str]:
        """
        Pick a challenger that significantly beats control.

        Requires every variant to reach the minimum sample size and the
        challenger's interval to sit entirely above control's. The experiment's
        status is never changed; with no winner the experiment is untouched.
        """
        experiment = self._get_experiment(experiment_id)
        stats = self.compute_statistics(experiment_id)
        by_variant = {s.variant: s for s in stats}

        control = by_variant.get(CONTROL_VARIANT)
        if control is None:
            return None

        minimum = experiment.minimum_sample_size or self.min_sample_size
        if any(s.participant_count < minimum for s in stats):
            return None

        qualifiers = [
            s for s in stats
            if s.variant != CONTROL_VARIANT
            and s.conversion_rate > control.conversion_rate
            and s.confidence_interval[0] > control.confidence_interval[1]
        ]
        if not qualifiers:
            return None

        winner = max(qualifiers, key=lambda s: s.conversion_rate)
        experiment.winning_variant = winner.variant
        self.store.commit()
        logger.info(
            f"Experiment {experiment_id} winner detected: {winner.variant} "
            f"({winner.conversion_rate:.4f} vs control {control.conversion_rate:.4f})"
        )
        return winner.variant

    def refresh_statistics(self, experiment_id: int) -> ExperimentStatisticsResponse:
        """Recompute and persist a snapshot."""
        experiment = self._get_experiment(experiment_id)
        stats = self.compute_statistics(experiment_id)
        calculated_at = datetime.utcnow()
        self.store.replace_snapshots(experiment_id, [
            StatisticsSnapshot(
                experiment_id=experiment_id,
                variant=s.variant,
                position=position,
                participant_count=s.participant_count,
                conversion_count=s.conversion_count,
                conversion_rate=s.conversion_rate,
                confidence_interval_lower=s.confidence_interval[0],
                confidence_interval_upper=s.confidence_interval[1],
                p_value=s.p_value,
                calculated_at=calculated_at,
            )
            for position, s in enumerate(stats)
        ])
        self.store.commit()
        return self._response(experiment, stats, calculated_at)

    def get_statistics(
        self, experiment_id: int, refresh: bool = False, max_age_seconds: Optional[int] = None
    ) -> ExperimentStatisticsResponse:
        """Serve the cached snapshot while fresh, otherwise recompute."""
        experiment = self._get_experiment(experiment_id)
        if max_age_seconds is None:
            max_age_seconds = settings.statistics_cache_seconds

        snapshots = self.store.get_snapshots(experiment_id)
        if not refresh and snapshots:
            calculated_at = snapshots[0].calculated_at
            fresh = datetime.utcnow() - calculated_at <= timedelta(seconds=max_age_seconds)
            matches = [s.variant for s in snapshots] == experiment.variant_names
            if fresh and matches:
                stats = [
                    VariantStatistics(
                        variant=s.variant,
                        participant_count=s.participant_count,
                        conversion_count=s.conversion_count,
                        conversion_rate=s.conversion_rate,
                        confidence_interval=[s.confidence_interval_lower, s.confidence_interval_upper],
                        p_value=s.p_value,
                    )
                    for s in snapshots
                ]
                return self._response(experiment, stats, calculated_at)

        return self.refresh_statistics(experiment_id)

    def refresh_active_experiments(self) -> int:
        """Refresh snapshots of running and paused experiments. Returns how many succeeded."""
        refreshed = 0
        for status in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
            for experiment in self.store.list_experiments(status):
                try:
                    self.refresh_statistics(experiment.id)
                except SQLAlchemyError:
                    self.store.rollback()
                    logger.error(f"Statistics refresh failed for experiment {experiment.id}", exc_info=True)
                else:
                    refreshed += 1
        return refreshed

    def _response(self, experiment, stats, calculated_at):
        return ExperimentStatisticsResponse(
            experiment_id=experiment.id,
            success_metric=experiment.success_metric,
            confidence_level=self.confidence_level,
            calculated_at=calculated_at,
            variants=stats,
        )
