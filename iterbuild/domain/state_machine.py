"""Allowed BuildJob stage transitions, derived from the pipeline order."""
from typing import Dict, Set

from iterbuild.domain.models import BuildStage, PIPELINE_ORDER, TERMINAL_STAGES


class StateMachineError(Exception):
    """Raised when an invalid stage transition is attempted."""
    pass


def _build_transitions() -> Dict[BuildStage, Set[BuildStage]]:
    transitions: Dict[BuildStage, Set[BuildStage]] = {}
    for index, stage in enumerate(PIPELINE_ORDER):
        if stage in TERMINAL_STAGES:
            transitions[stage] = set()
            continue
        transitions[stage] = {PIPELINE_ORDER[index + 1], BuildStage.FAILED, BuildStage.CANCELED}
    transitions[BuildStage.FAILED] = set()  # Final State
    transitions[BuildStage.CANCELED] = set()  # Final State
    return transitions


class StateMachine:
    """
    Mechanical Enforcer for BuildJob stage transitions.
    Stages only move one step forward along the pipeline; failed and
    canceled are reachable from any non-terminal stage.
    """

    _TRANSITIONS: Dict[BuildStage, Set[BuildStage]] = _build_transitions()

    @staticmethod
    def allowed_next(current: BuildStage) -> Set[BuildStage]:
        return set(StateMachine._TRANSITIONS.get(BuildStage(current), set()))

    @staticmethod
    def validate_transition(current: BuildStage, requested: BuildStage) -> bool:
        current = BuildStage(current)
        requested = BuildStage(requested)
        if requested not in StateMachine._TRANSITIONS.get(current, set()):
            raise StateMachineError(f"Invalid build stage transition: {current.value} -> {requested.value}")
        return True
