"""Transition table for resource lifecycle reconciliation.

Maps (desired state, observed status) onto the ordered actions that converge
the two. Existence and running state are the only things that change; a
resource's specification is never touched.
"""

from provisioner.state import Action, DesiredState, ObservedStatus


class ResourceStateMachine:
    """Centralized lifecycle decisions for a single resource.

    Resource lifecycle:
        absent -> created (create)
        created | stopped -> running (start)
        running -> stopped (stop)
        created | stopped -> absent (delete)
    """

    TRANSITIONS: dict[tuple[DesiredState, ObservedStatus], tuple[Action, ...]] = {
        (DesiredState.PRESENT, ObservedStatus.ABSENT): (Action.CREATE,),
        (DesiredState.PRESENT, ObservedStatus.CREATED): (),
        (DesiredState.PRESENT, ObservedStatus.RUNNING): (),
        (DesiredState.PRESENT, ObservedStatus.STOPPED): (),
        (DesiredState.STARTED, ObservedStatus.ABSENT): (Action.CREATE, Action.START, Action.PROBE),
        (DesiredState.STARTED, ObservedStatus.CREATED): (Action.START, Action.PROBE),
        (DesiredState.STARTED, ObservedStatus.RUNNING): (),
        (DesiredState.STARTED, ObservedStatus.STOPPED): (Action.START, Action.PROBE),
        (DesiredState.STOPPED, ObservedStatus.ABSENT): (),
        (DesiredState.STOPPED, ObservedStatus.CREATED): (),
        (DesiredState.STOPPED, ObservedStatus.RUNNING): (Action.STOP,),
        (DesiredState.STOPPED, ObservedStatus.STOPPED): (),
        (DesiredState.ABSENT, ObservedStatus.ABSENT): (),
        (DesiredState.ABSENT, ObservedStatus.CREATED): (Action.DELETE,),
        (DesiredState.ABSENT, ObservedStatus.RUNNING): (Action.STOP, Action.DELETE),
        (DesiredState.ABSENT, ObservedStatus.STOPPED): (Action.DELETE,),
    }

    # Status a resource must reach before an action counts as complete.
    # Some hypervisors report a freshly created container as stopped.
    SETTLED_STATES: dict[Action, frozenset[ObservedStatus]] = {
        Action.CREATE: frozenset({ObservedStatus.CREATED, ObservedStatus.STOPPED}),
        Action.START: frozenset({ObservedStatus.RUNNING}),
        Action.STOP: frozenset({ObservedStatus.STOPPED}),
        Action.DELETE: frozenset({ObservedStatus.ABSENT}),
    }

    # States in which a resource with this identifier exists
    EXISTS_STATES: frozenset[ObservedStatus] = frozenset({
        ObservedStatus.CREATED,
        ObservedStatus.RUNNING,
        ObservedStatus.STOPPED,
    })

    @classmethod
    def actions_for(
        cls,
        desired: DesiredState,
        observed: ObservedStatus,
        probe_when_running: bool = False,
    ) -> tuple[Action, ...]:
        """Ordered actions that converge `observed` onto `desired`.

        Raises KeyError for UNKNOWN: nothing is safe to do from there.
        """
        actions = cls.TRANSITIONS[(desired, observed)]
        if (
            probe_when_running
            and desired == DesiredState.STARTED
            and observed == ObservedStatus.RUNNING
        ):
            return (Action.PROBE,)
        return actions

    @classmethod
    def settled_states(cls, action: Action) -> frozenset[ObservedStatus]:
        return cls.SETTLED_STATES[action]

    @classmethod
    def exists(cls, observed: ObservedStatus) -> bool:
        return observed in cls.EXISTS_STATES
