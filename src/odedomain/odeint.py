# Adaptive Cash-Karp integrator with dense output, used as the host for the
# domain callbacks. The step and quality-control routines follow the
# Numerical Recipes rkck/rkqs pair.

from dataclasses import dataclass, field
from math import copysign
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from odedomain.callbacks import CallbackSet
from odedomain.logger import get_logger
from odedomain.types import Float64NDArray, State, Tolerance, is_value_state

logger = get_logger(__name__)

TINY = 1.0e-30

SAFETY = 0.9
PGROW  = -0.2
PSHRNK = -0.25
ERRCON = 1.89e-4

# Cash-Karp tableau
_A2, _A3, _A4, _A5, _A6 = 0.2, 0.3, 0.6, 1.0, 0.875

_B21 = 0.2
_B31, _B32 = 3.0/40.0, 9.0/40.0
_B41, _B42, _B43 = 0.3, -0.9, 1.2
_B51, _B52, _B53, _B54 = -11.0/54.0, 2.5, -70.0/27.0, 35.0/27.0
_B61, _B62, _B63, _B64, _B65 = (
    1631.0/55296.0, 175.0/512.0, 575.0/13824.0, 44275.0/110592.0, 253.0/4096.0
)

# 5th-order weights and their differences to the embedded 4th-order ones
_C1, _C3, _C4, _C6 = 37.0/378.0, 250.0/621.0, 125.0/594.0, 512.0/1771.0
_DC1 = _C1 - 2825.0/27648.0
_DC3 = _C3 - 18575.0/48384.0
_DC4 = _C4 - 13525.0/55296.0
_DC5 = -277.0/14336.0
_DC6 = _C6 - 0.25


def rkck(
    y: State,
    dydx: State,
    x: float,
    h: float,
    derivs: Callable[[float, State], State],
) -> Tuple[State, State]:
    """
    Cash–Karp Runge–Kutta step.
    Returns:
      yout : 5th-order solution estimate
      yerr : error estimate (y5 - y4), used for step-size control
    """
    k1 = dydx
    k2 = derivs(x + _A2*h, y + h*(_B21*k1))
    k3 = derivs(x + _A3*h, y + h*(_B31*k1 + _B32*k2))
    k4 = derivs(x + _A4*h, y + h*(_B41*k1 + _B42*k2 + _B43*k3))
    k5 = derivs(x + _A5*h, y + h*(_B51*k1 + _B52*k2 + _B53*k3 + _B54*k4))
    k6 = derivs(x + _A6*h, y + h*(_B61*k1 + _B62*k2 + _B63*k3 + _B64*k4 + _B65*k5))

    yout = y + h*(_C1*k1 + _C3*k3 + _C4*k4 + _C6*k6)
    yerr = h*(_DC1*k1 + _DC3*k3 + _DC4*k4 + _DC5*k5 + _DC6*k6)

    return yout, yerr


def rkqs(
    y: State,
    dydx: State,
    x: float,
    htry: float,
    eps: float,
    yscal: Float64NDArray,
    derivs: Callable[[float, State], State],
) -> Tuple[State, float, float, float]:
    """
    Quality-controlled single step (Numerical Recipes 'rkqs') using 'rkck'.

    Parameters
    ----------
    y      : current state at x (not modified in-place)
    dydx   : derivative at (x, y)
    x      : current independent variable
    htry   : trial step size
    eps    : desired accuracy
    yscal  : scaling vector (typically abstol + reltol*|y| + TINY)
    derivs : function f(x, y) -> dy/dx

    Returns
    -------
    ynew  : state after accepted step
    xnew  : x + hdid
    hdid  : actual step taken
    hnext : proposed next step
    """
    h = float(htry)

    while True:
        ytemp, yerr = rkck(y, dydx, x, h, derivs)

        # errmax = max_i |yerr_i / yscal_i| / eps
        errmax = float(np.max(np.abs(yerr / yscal)))
        errmax /= eps

        if errmax <= 1.0:
            break

        htemp = SAFETY * h * (errmax ** PSHRNK)
        if h >= 0.0:
            h = max(htemp, 0.1 * h)
        else:
            h = min(htemp, 0.1 * h)

        if x + h == x:
            raise RuntimeError("stepsize underflow in rkqs")

    if errmax > ERRCON:
        hnext = SAFETY * h * (errmax ** PGROW)
    else:
        hnext = 5.0 * h

    return ytemp, x + h, h, hnext


@dataclass
class IntegratorOptions:
    """Solver options for :class:`ODEIntegrator`.

    ``abstol`` is also the default tolerance of the domain callbacks.
    ``dt`` is the initial step guess; it defaults to 1/100 of the time span.
    ``tstops`` are times the integrator must land on exactly; the end of the
    time span is always one of them.
    """
    abstol: Tolerance = 1e-6
    reltol: float = 1e-3
    dt: Optional[float] = None
    dtmin: float = 0.0
    dtmax: float = np.inf
    tstops: Sequence[float] = field(default_factory=tuple)
    save_everystep: bool = True
    save_start: bool = True
    maxiters: int = 100_000
    verbose: bool = True

    def __post_init__(self):
        if not np.isscalar(self.abstol):
            self.abstol = np.asarray(self.abstol, dtype=float)
        if np.any(np.asarray(self.abstol) < 0) or self.reltol < 0:
            raise ValueError("Tolerances must be non-negative")
        if self.dt is not None and self.dt == 0:
            raise ValueError("Initial step size dt must be non-zero")
        if self.dtmin < 0 or self.dtmin > self.dtmax:
            raise ValueError(f"Invalid step size bounds: dtmin={self.dtmin}, dtmax={self.dtmax}")
        if self.maxiters < 1:
            raise ValueError("maxiters must be >= 1")


@dataclass
class ODESolution:
    """Saved trajectory returned by :func:`odeint`."""
    t: Float64NDArray
    u: Float64NDArray
    retcode: str
    nok: int   # steps taken with the attempted step size
    nbad: int  # steps where the attempted step size was reduced


def _copy_state(u):
    if isinstance(u, (int, float, np.number)):
        return float(u)
    if is_value_state(u):
        return u
    return np.array(u, dtype=float, copy=True)


class ODEIntegrator:
    """Stepping integrator for y'(t) = f(t, y) with callbacks after each step.

    The integrator exposes the state read and written by the domain callbacks:
    the current time ``t``, state ``u``, last step ``dt``, direction ``tdir``,
    parameters ``p``, options ``opts``, the proposed next step, clamping of
    step sizes to bounds and tstops, and dense output through ``__call__``.

    Parameters
    ----------
    derivs : callable
        ``derivs(t, u)`` if ``p`` is None, otherwise ``derivs(t, u, p)``.
    u0 : float or array_like
        Initial state. NumPy input is copied; JAX arrays and scalars are
        immutable and used as given.
    tspan : tuple of float
        ``(t0, tend)``; ``tend < t0`` integrates backwards.
    p : optional
        Parameters forwarded to ``derivs`` and to time-dependent callbacks.
    callback : DiscreteCallback or CallbackSet, optional
        Callbacks run after every accepted step.
    opts : IntegratorOptions, optional
    """

    def __init__(self, derivs, u0, tspan, p=None, callback=None, opts=None):
        self.opts = opts if opts is not None else IntegratorOptions()
        t0, tend = float(tspan[0]), float(tspan[1])
        if t0 == tend:
            raise ValueError("Empty time span: t0 == tend")

        self.derivs = derivs
        self.p = p
        self.tdir = copysign(1.0, tend - t0)
        self.tend = tend

        self.t = t0
        self.u = _copy_state(u0)
        self.f = self._rhs(self.t, self.u)
        self.tprev, self.uprev, self.fprev = self.t, self.u, self.f

        dt0 = self.opts.dt if self.opts.dt is not None else abs(tend - t0) / 100.0
        self.dt = copysign(abs(dt0), self.tdir)
        self._dtpropose = self.dt

        # pending tstops, ordered along the integration direction
        stops = {tend}
        stops.update(float(s) for s in self.opts.tstops
                     if self.tdir * (s - t0) > 0 and self.tdir * (tend - s) >= 0)
        self.tstops: List[float] = sorted(stops, key=lambda s: self.tdir * s)

        self.callbacks = list(CallbackSet(callback)) if callback is not None else []

        self.ts: List[float] = []
        self.us: List[State] = []
        self.nok = 0
        self.nbad = 0
        self.iters = 0

        if self.opts.save_start:
            self._save()
        for cb in self.callbacks:
            cb.initialize(cb, self.u, self.t, self)

    def __repr__(self):
        return "ODEIntegrator(t={}, dt={}, tdir={:+.0f})".format(self.t, self.dt, self.tdir)

    def _rhs(self, t, u):
        if self.p is None:
            return self.derivs(t, u)
        return self.derivs(t, u, self.p)

    def _save(self):
        self.ts.append(self.t)
        self.us.append(self.u if is_value_state(self.u) else np.copy(self.u))

    # --- dense output -------------------------------------------------

    def __call__(self, t: float, out: Optional[Float64NDArray] = None) -> State:
        """Evaluate the cubic Hermite interpolant of the last step at ``t``.

        Times past the current step extrapolate the same polynomial, which is
        how the domain callbacks probe states the next step would reach. The
        value is written into ``out`` when it is given.
        """
        h = self.t - self.tprev
        if h == 0:
            value = self.u
        else:
            theta = (t - self.tprev) / h
            h00 = (1 + 2*theta) * (1 - theta)**2
            h10 = theta * (1 - theta)**2
            h01 = theta**2 * (3 - 2*theta)
            h11 = theta**2 * (theta - 1)
            value = h00*self.uprev + h10*h*self.fprev + h01*self.u + h11*h*self.f
        if out is None:
            return value
        out[...] = value
        return out

    # --- step size control --------------------------------------------

    def get_proposed_dt(self) -> float:
        return self._dtpropose

    def set_proposed_dt(self, dt: float) -> None:
        self._dtpropose = dt

    def fix_dt_at_bounds(self) -> None:
        """Clamp ``|dt|`` into ``[dtmin, dtmax]`` keeping the integration direction."""
        adt = min(abs(self.dt), self.opts.dtmax)
        adt = max(adt, self.opts.dtmin)
        self.dt = self.tdir * adt

    def modify_dt_for_tstops(self) -> None:
        """Shorten ``dt`` so that ``t + dt`` does not pass the next tstop."""
        if self.tstops:
            dist = self.tdir * (self.tstops[0] - self.t)
            if abs(self.dt) > dist:
                self.dt = self.tdir * dist

    def u_modified(self, modified: bool) -> None:
        """Refresh ``f(t, u)`` after ``u`` was changed outside a step."""
        if modified:
            self.f = self._rhs(self.t, self.u)

    # --- stepping -----------------------------------------------------

    def step(self) -> None:
        """Take one quality-controlled step and run the callbacks."""
        if not self.tstops or self.tdir * (self.tend - self.t) <= 0:
            raise RuntimeError(f"Integration already reached the end of the time span at t={self.t}")
        self.dt = self._dtpropose
        self.fix_dt_at_bounds()
        self.modify_dt_for_tstops()
        if self.t + self.dt == self.t:
            raise RuntimeError(f"Step size too small in odeint: dt={self.dt} at t={self.t}")
        tstop = self.tstops[0]
        snapped = self.dt == tstop - self.t

        yscal = self.opts.abstol + self.opts.reltol * np.abs(self.u) + TINY
        ynew, tnew, hdid, hnext = rkqs(self.u, self.f, self.t, self.dt, 1.0, yscal, self._rhs)

        # NR compares hdid == h literally; we allow machine epsilon slack.
        if abs(hdid - self.dt) <= max(1.0, abs(self.dt)) * 1e-15:
            self.nok += 1
        else:
            self.nbad += 1
        if snapped and hdid == self.dt:
            tnew = tstop

        self.tprev, self.uprev, self.fprev = self.t, self.u, self.f
        self.t, self.u, self.dt = tnew, ynew, hdid
        self.f = self._rhs(self.t, self.u)
        self._dtpropose = hnext
        self.iters += 1

        while self.tstops and self.tdir * (self.tstops[0] - self.t) <= 0:
            self.tstops.pop(0)

        self._apply_callbacks()

    def _apply_callbacks(self):
        saved = False
        for cb in self.callbacks:
            if not cb.condition(self.u, self.t, self):
                continue
            if cb.save_positions[0]:
                self._save()
            cb.affect(self)
            if cb.save_positions[1]:
                self._save()
                saved = True
        if self.opts.save_everystep and not saved:
            self._save()

    def solve(self) -> ODESolution:
        """Step until the end of the time span and return the saved trajectory."""
        while self.tdir * (self.tend - self.t) > 0:
            if self.iters >= self.opts.maxiters:
                raise RuntimeError("Too many steps in routine odeint")
            self.step()
        if not self.ts or self.ts[-1] != self.t:
            self._save()
        logger.debug("finished at t=%g after %d good and %d bad steps",
                     self.t, self.nok, self.nbad)
        return ODESolution(
            t=np.array(self.ts),
            u=np.stack([np.asarray(u) for u in self.us]),
            retcode="Success",
            nok=self.nok,
            nbad=self.nbad,
        )


def odeint(derivs, u0, tspan, p=None, callback=None, **options) -> ODESolution:
    """
    Integrate u'(t) = f(t, u) over ``tspan`` with adaptive steps and callbacks.

    Parameters
    ----------
    derivs : function
        derivs(t, u) -> dudt, or derivs(t, u, p) -> dudt when ``p`` is given.
    u0 : float or array_like
        Initial state at tspan[0]. NumPy input is not modified in-place.
    tspan : tuple of float
        Integration limits (t0, tend).
    p : optional
        Parameters passed to ``derivs`` and to time-dependent callbacks.
    callback : DiscreteCallback or CallbackSet, optional
        Callbacks run after every accepted step, e.g. ``PositiveDomain()``.
    **options
        Fields of :class:`IntegratorOptions`.

    Returns
    -------
    ODESolution
        Saved times ``t`` and states ``u`` (one row per saved time).
    """
    integrator = ODEIntegrator(derivs, u0, tspan, p=p, callback=callback,
                               opts=IntegratorOptions(**options))
    return integrator.solve()
