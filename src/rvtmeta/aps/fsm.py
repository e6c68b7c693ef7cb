"""Translation job lifecycle finite state machine.

One FSM instance per polled job.  It is purely a validation tool: the
poller maps each manifest observation to an event and the FSM rejects
anything that would move the job backwards or out of a terminal state.
"""

from __future__ import annotations

from statemachine import State, StateMachine

from rvtmeta.models import JobState


class JobLifecycleSM(StateMachine):
    """Forward-only lifecycle for a Model Derivative job.

    States:
        pending     -- Job accepted, manifest not yet reporting progress.
        in_progress -- Translation running.
        succeeded   -- Derivatives ready (terminal).
        failed      -- Service reported failure (terminal).
        timed_out   -- Local deadline elapsed before a terminal report (terminal).
    """

    pending = State("pending", initial=True, value=JobState.PENDING.value)
    in_progress = State("in_progress", value=JobState.IN_PROGRESS.value)
    succeeded = State("succeeded", value=JobState.SUCCEEDED.value, final=True)
    failed = State("failed", value=JobState.FAILED.value, final=True)
    timed_out = State("timed_out", value=JobState.TIMED_OUT.value, final=True)

    start = pending.to(in_progress)
    succeed = pending.to(succeeded) | in_progress.to(succeeded)
    fail = pending.to(failed) | in_progress.to(failed)
    expire = pending.to(timed_out) | in_progress.to(timed_out)


_EVENT_FOR_STATE: dict[JobState, str] = {
    JobState.IN_PROGRESS: "start",
    JobState.SUCCEEDED: "succeed",
    JobState.FAILED: "fail",
    JobState.TIMED_OUT: "expire",
}


def create_fsm(current_state: str = JobState.PENDING.value) -> JobLifecycleSM:
    """Create an FSM positioned at *current_state* (a :class:`JobState` value)."""
    return JobLifecycleSM(start_value=current_state)


def current_job_state(fsm: JobLifecycleSM) -> JobState:
    return JobState(fsm.current_state.value)


def advance(fsm: JobLifecycleSM, observed: JobState) -> bool:
    """Move *fsm* towards *observed* if that is a forward transition.

    Returns:
        ``True`` if the FSM changed state, ``False`` if the observation
        was a repeat or would move backwards (e.g. ``pending`` after
        ``in_progress``) and was ignored.

    Raises:
        statemachine.exceptions.TransitionNotAllowed: The FSM is already
            terminal and *observed* names a different non-pending state.
    """
    current = current_job_state(fsm)
    if observed == current:
        return False
    if observed == JobState.PENDING and current == JobState.IN_PROGRESS:
        return False
    event = _EVENT_FOR_STATE.get(observed)
    if event is None:
        return False
    fsm.send(event)
    return True
