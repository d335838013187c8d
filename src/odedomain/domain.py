# Keep an ODE solution inside a domain after every accepted step. Inspired by:
# Shampine, L.F., S. Thompson, J.A. Kierzenka, and G.D. Byrne, "Non-negative
# solutions of ODEs," Applied Mathematics and Computation Vol. 170, 2005,
# pp. 556-569.

import copy
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

import jax.numpy as jnp
import numpy as np
from jax import Array

from odedomain.callbacks import CallbackSet, DiscreteCallback, always
from odedomain.logger import get_logger
from odedomain.manifold import manifold_projection
from odedomain.types import DomainIntegrator, State, Tolerance, is_value_state

logger = get_logger(__name__)

SCALEFACTOR = 0.5
# applied to the accepted trial step, which was found by extrapolating the
# dense output rather than by taking the step
SAFETY = 0.9


class DomainAffect(ABC):
    """Step-size guard that keeps the next state of an integrator in a domain.

    After every accepted step the proposed next step size is probed with the
    integrator's dense output. While the state it would reach fails
    :meth:`test_acceptance`, the step is multiplied by ``scalefactor`` and
    clamped to the integrator's bounds and tstops again. The search stops on
    acceptance, when the step size vanishes, or when clamping leaves it
    unchanged. The step already taken is never altered; only the proposal for
    the next step is revised.

    Parameters
    ----------
    abstol : float or array_like, optional
        Tolerance of the acceptance test, scalar or per component. Defaults to
        ``integrator.opts.abstol``.
    scalefactor : float, optional
        Ratio by which a rejected trial step is shrunk, in (0, 1). Default 1/2.
    u : array_like, optional
        Scratch state the trial states are written into. It is copied here;
        when omitted a buffer shaped like the integrator state is allocated on
        first use. Scalar and JAX states never need one.
    """

    def __init__(self, abstol: Optional[Tolerance] = None,
                 scalefactor: Optional[float] = None, u: Optional[State] = None):
        if scalefactor is not None and not 0 < scalefactor < 1:
            raise ValueError(f"scalefactor must lie in (0, 1), got {scalefactor}")
        if abstol is not None and np.any(np.asarray(abstol) < 0):
            raise ValueError("abstol must be non-negative")
        self.abstol = abstol
        self.scalefactor = SCALEFACTOR if scalefactor is None else scalefactor
        self.u = None if u is None else copy.deepcopy(u)
        self._scratch = self.u

    def __repr__(self):
        return "{}(abstol={!r}, scalefactor={!r})".format(
            type(self).__name__, self.abstol, self.scalefactor
        )

    def initialize(self, cb, u, t, integrator: DomainIntegrator) -> None:
        """Allocate the scratch state before integration starts."""
        self._trial_state(integrator)

    def sanitize(self, integrator: DomainIntegrator) -> bool:
        """Modify the integrator state if required; return whether it changed."""
        return False

    def setup_scratch(self, integrator: DomainIntegrator) -> Tuple:
        """Return extra arguments passed on to :meth:`test_acceptance`."""
        return ()

    @abstractmethod
    def test_acceptance(self, u: State, p, t: float, abstol: Tolerance, *args) -> bool:
        """Return whether ``u`` is an acceptable state at time ``t``."""

    def _trial_state(self, integrator):
        if is_value_state(integrator.u):
            return integrator.u
        self._scratch = _matching_buffer(self._scratch, integrator.u)
        return self._scratch

    def __call__(self, integrator: DomainIntegrator) -> None:
        integrator.u_modified(self.sanitize(integrator))

        u = self._trial_state(integrator)
        value_state = is_value_state(u)
        abstol = integrator.opts.abstol if self.abstol is None else self.abstol
        scalefactor = self.scalefactor
        args = self.setup_scratch(integrator)

        dt = integrator.dt
        dt_modified = False
        p = integrator.p

        # probe the proposed next step
        integrator.dt = integrator.get_proposed_dt()
        integrator.fix_dt_at_bounds()
        integrator.modify_dt_for_tstops()
        t = integrator.t + integrator.dt

        while integrator.tdir * integrator.dt > 0:
            if value_state:
                u = integrator(t)
            else:
                integrator(t, out=u)

            if self.test_acceptance(u, p, t, abstol, *args):
                break

            dtcache = integrator.dt
            integrator.dt *= scalefactor
            dt_modified = True

            integrator.fix_dt_at_bounds()
            integrator.modify_dt_for_tstops()
            t = integrator.t + integrator.dt

            if dtcache == integrator.dt:
                if integrator.opts.verbose:
                    logger.warning(
                        "Could not restrict values to domain. Iteration was canceled "
                        "since time step dt = %g could not be reduced.", integrator.dt
                    )
                break

        if dt_modified:
            integrator.set_proposed_dt(SAFETY * integrator.dt)
        else:
            integrator.set_proposed_dt(integrator.dt)
        integrator.dt = dt


class PositiveDomainAffect(DomainAffect):
    """Keep every component of the state non-negative."""

    def sanitize(self, integrator: DomainIntegrator) -> bool:
        """Set all negative components of ``integrator.u`` to zero."""
        u = integrator.u
        if isinstance(u, Array):
            negative = u < 0
            if not bool(jnp.any(negative)):
                return False
            integrator.u = jnp.where(negative, jnp.zeros_like(u), u)
            return True
        if np.isscalar(u):
            if u < 0:
                integrator.u = type(u)(0)
                return True
            return False
        negative = u < 0
        if not negative.any():
            return False
        u[negative] = 0
        return True

    def test_acceptance(self, u, p, t, abstol, *args) -> bool:
        # entries must be greater than -abstol
        return bool(np.all(np.asarray(u) + abstol > 0))


class GeneralDomainAffect(DomainAffect):
    """Keep the residual ``g`` of the state below ``abstol`` componentwise.

    Parameters
    ----------
    g : callable
        ``g(u)`` if ``autonomous``, otherwise ``g(u, p, t)``; returns the
        residual, shaped like the state.
    autonomous : bool
        Whether ``g`` depends on the state only.
    resid : array_like, optional
        Residual buffer, copied here; allocated on first use when omitted.
    """

    def __init__(self, g: Callable, abstol=None, scalefactor=None, u=None,
                 resid=None, autonomous: bool = True):
        super().__init__(abstol=abstol, scalefactor=scalefactor, u=u)
        self.g = g
        self.autonomous = autonomous
        self.resid = None if resid is None else copy.deepcopy(resid)
        self._resid = self.resid

    def setup_scratch(self, integrator):
        if is_value_state(integrator.u):
            return (None,)
        self._resid = _matching_buffer(self._resid, integrator.u)
        return (self._resid,)

    def residual(self, u, p, t, resid=None):
        """Evaluate the residual at ``u``, overwriting ``resid`` when given."""
        if self.autonomous:
            value = self.g(u)
        else:
            value = self.g(u, p, t)
        if resid is None:
            return value
        resid[...] = value
        return resid

    def test_acceptance(self, u, p, t, abstol, resid=None) -> bool:
        resid = self.residual(u, p, t, resid)
        return bool(np.all(np.abs(np.asarray(resid)) < abstol))


def _matching_buffer(buf, u):
    if (not isinstance(buf, np.ndarray) or buf.shape != np.shape(u)
            or buf.dtype != u.dtype):
        return np.empty_like(u)
    return buf


def PositiveDomain(u=None, *, save: bool = True, abstol=None,
                   scalefactor=None) -> DiscreteCallback:
    """Callback keeping all components of the solution non-negative.

    After each step, negative components are set to zero and the next step is
    shrunk until the dense output predicts entries greater than ``-abstol``.

    Parameters
    ----------
    u : array_like, optional
        Scratch state for trial states.
    save : bool
        Whether the state after the callback is saved in the trajectory.
    abstol : float or array_like, optional
        Defaults to the integrator's absolute tolerance.
    scalefactor : float, optional
        Step shrink ratio, default 1/2.
    """
    affect = PositiveDomainAffect(abstol=abstol, scalefactor=scalefactor, u=u)
    return DiscreteCallback(always, affect, save_positions=(False, save))


def GeneralDomain(g, u=None, *, resid=None, save: bool = True, abstol=None,
                  scalefactor=None, autonomous: bool = True, nlsolve: str = "lm",
                  nlopts: Optional[dict] = None) -> CallbackSet:
    """Callbacks keeping the residual ``g`` of the solution near zero.

    The state is first projected onto ``g(u) = 0`` with a nonlinear solve
    (:func:`~odedomain.manifold.manifold_projection`), then the next step is
    shrunk until the dense output predicts ``|g(u)| < abstol``.

    Parameters
    ----------
    g : callable
        ``g(u)`` or, with ``autonomous=False``, ``g(u, p, t)``.
    u, resid : array_like, optional
        Scratch state and residual buffers.
    save : bool
        Whether the state after the callbacks is saved in the trajectory.
    abstol : float or array_like, optional
        Defaults to the integrator's absolute tolerance.
    scalefactor : float, optional
        Step shrink ratio, default 1/2.
    autonomous : bool
        Whether ``g`` depends on the state only.
    nlsolve : str
        ``scipy.optimize.root`` method used by the projection.
    nlopts : dict, optional
        Solver options forwarded to ``scipy.optimize.root``.
    """
    affect = GeneralDomainAffect(g, abstol=abstol, scalefactor=scalefactor, u=u,
                                 resid=resid, autonomous=autonomous)
    return CallbackSet(
        manifold_projection(g, save=False, autonomous=autonomous, method=nlsolve,
                            nlopts=nlopts),
        DiscreteCallback(always, affect, save_positions=(False, save)),
    )
