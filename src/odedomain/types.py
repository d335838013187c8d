"""Shared type aliases and the integrator contract used by the domain callbacks."""

from typing import Any, Optional, Protocol, Union

import numpy as np
import numpy.typing as npt
from jax import Array

Float64NDArray = npt.NDArray[np.float64]

# A state is a NumPy array (mutable buffer), a scalar or an immutable JAX array.
State = Union[float, Float64NDArray, Array]
Tolerance = Union[float, Float64NDArray]


class DomainIntegrator(Protocol):
    """What a domain callback reads from and writes to its host integrator."""

    t: float
    u: State
    dt: float
    tdir: float
    p: Any
    opts: Any

    def __call__(self, t: float, out: Optional[Float64NDArray] = None) -> State: ...

    def get_proposed_dt(self) -> float: ...

    def set_proposed_dt(self, dt: float) -> None: ...

    def fix_dt_at_bounds(self) -> None: ...

    def modify_dt_for_tstops(self) -> None: ...

    def u_modified(self, modified: bool) -> None: ...


def is_value_state(u: Any) -> bool:
    """Return True for states that are never mutated in place (scalars, JAX arrays)."""
    return np.isscalar(u) or isinstance(u, Array)
