"""
Exact projection of the integrator state onto the manifold g(u) = 0.
"""

from typing import Callable, Optional

import jax.numpy as jnp
import numpy as np
import scipy.optimize
from jax import Array

from odedomain.callbacks import DiscreteCallback, always
from odedomain.logger import get_logger

logger = get_logger(__name__)

NLOPTS = {"xtol": 1e-12, "ftol": 1e-12}


class ManifoldProjection:
    """Callback affect that snaps ``integrator.u`` onto ``g(u) = 0``.

    The nonlinear system is solved with ``scipy.optimize.root`` starting from
    the current state. The default Levenberg-Marquardt method tolerates
    residuals with components that do not depend on the state. A solve that
    does not converge keeps the best iterate and is reported as a warning.

    Parameters
    ----------
    g : callable
        ``g(u)`` if ``autonomous``, otherwise ``g(u, p, t)``.
    autonomous : bool
        Whether ``g`` depends on the state only.
    method : str
        Method name passed to ``scipy.optimize.root``.
    nlopts : dict, optional
        ``options`` passed to ``scipy.optimize.root``. Defaults to tight
        ``xtol``/``ftol`` for ``lm`` and to the solver defaults otherwise.
    """

    def __init__(self, g: Callable, autonomous: bool = True, method: str = "lm",
                 nlopts: Optional[dict] = None):
        self.g = g
        self.autonomous = autonomous
        self.method = method
        if nlopts is None:
            nlopts = NLOPTS if method == "lm" else {}
        self.nlopts = dict(nlopts)

    def __repr__(self):
        return "ManifoldProjection(method={!r}, autonomous={})".format(self.method, self.autonomous)

    def __call__(self, integrator) -> None:
        u = integrator.u
        shape = np.shape(u)
        p, t = integrator.p, integrator.t

        def residual(x):
            state = x.reshape(shape)
            if self.autonomous:
                return np.ravel(self.g(state))
            return np.ravel(self.g(state, p, t))

        x0 = np.array(u, dtype=float).ravel()
        sol = scipy.optimize.root(residual, x0, method=self.method, options=self.nlopts)
        if not sol.success and integrator.opts.verbose:
            logger.warning("Projection onto manifold did not converge at t = %g: %s",
                           t, sol.message)

        x = sol.x.reshape(shape)
        if isinstance(u, Array):
            integrator.u = jnp.asarray(x, dtype=u.dtype)
        elif np.isscalar(u):
            integrator.u = float(x)
        else:
            u[...] = x
        integrator.u_modified(True)


def manifold_projection(g, *, save: bool = False, autonomous: bool = True,
                        method: str = "lm", nlopts: Optional[dict] = None) -> DiscreteCallback:
    """Callback projecting the state onto ``g(u) = 0`` after every step."""
    affect = ManifoldProjection(g, autonomous=autonomous, method=method, nlopts=nlopts)
    return DiscreteCallback(always, affect, save_positions=(False, save))
