"""FastAPI dependencies wiring request sessions into the engine services."""

from fastapi import Depends
from sqlalchemy.orm import Session

from fitflags.database import get_db
from fitflags.services.conversions import ConversionRecorder
from fitflags.services.experiments import ExperimentEngine
from fitflags.services.flags import FlagAdmin, FlagEvaluator
from fitflags.services.rollouts import RolloutScheduler
from fitflags.services.statistics import StatisticsEngine
from fitflags.services.usage import UsageTracker
from fitflags.store import SQLAlchemyStore, Store


def get_store(db: Session = Depends(get_db)) -> Store:
    return SQLAlchemyStore(db)


def get_evaluator(store: Store = Depends(get_store)) -> FlagEvaluator:
    return FlagEvaluator(store)


def get_flag_admin(store: Store = Depends(get_store)) -> FlagAdmin:
    return FlagAdmin(store)


def get_experiment_engine(store: Store = Depends(get_store)) -> ExperimentEngine:
    return ExperimentEngine(store)


def get_recorder(store: Store = Depends(get_store)) -> ConversionRecorder:
    return ConversionRecorder(store)


def get_statistics_engine(store: Store = Depends(get_store)) -> StatisticsEngine:
    return StatisticsEngine(store)


def get_rollout_scheduler(store: Store = Depends(get_store)) -> RolloutScheduler:
    return RolloutScheduler(store)


def get_usage_tracker(store: Store = Depends(get_store)) -> UsageTracker:
    return UsageTracker(store)
