"""
Discrete callbacks run by :class:`odedomain.odeint.ODEIntegrator` after every
accepted step.
"""

from typing import Callable, Iterator, Optional, Tuple


def _initialize_noop(cb, u, t, integrator):
    pass


class DiscreteCallback:
    """Callback checked once after each accepted integrator step.

    Parameters
    ----------
    condition : callable
        ``condition(u, t, integrator) -> bool``; ``affect`` runs when it is true.
    affect : callable
        ``affect(integrator)``; may modify the integrator state and step proposal.
    initialize : callable, optional
        ``initialize(cb, u, t, integrator)``, called once before the first step.
        Defaults to ``affect.initialize`` when the affect object has one.
    save_positions : tuple of bool
        Whether to save the state before and after ``affect`` runs.
    """

    def __init__(
        self,
        condition: Callable,
        affect: Callable,
        initialize: Optional[Callable] = None,
        save_positions: Tuple[bool, bool] = (True, True),
    ):
        if len(save_positions) != 2:
            raise ValueError("save_positions must be a pair of booleans")
        self.condition = condition
        self.affect = affect
        if initialize is None:
            initialize = getattr(affect, "initialize", _initialize_noop)
        self.initialize = initialize
        self.save_positions = tuple(bool(s) for s in save_positions)

    def __repr__(self):
        return "DiscreteCallback(affect={!r}, save_positions={})".format(
            self.affect, self.save_positions
        )


class CallbackSet:
    """Ordered collection of callbacks; nested sets are flattened."""

    def __init__(self, *callbacks):
        self.callbacks = []
        for cb in callbacks:
            if cb is None:
                continue
            if isinstance(cb, CallbackSet):
                self.callbacks.extend(cb.callbacks)
            else:
                self.callbacks.append(cb)

    def __iter__(self) -> Iterator[DiscreteCallback]:
        return iter(self.callbacks)

    def __len__(self):
        return len(self.callbacks)

    def __repr__(self):
        return "CallbackSet({})".format(", ".join(repr(cb) for cb in self.callbacks))


def always(u, t, integrator) -> bool:
    """Condition that fires after every step."""
    return True
