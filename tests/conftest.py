from types import SimpleNamespace

import numpy as np
import pytest


class LinearIntegrator:
    """Integrator stub whose dense output moves with constant slope ``rate``.

    Records every sampled time, so tests can check the shrink sequence.
    """

    def __init__(self, u, rate, t=0.0, dt=0.1, proposed=1.0, tdir=1.0,
                 dtmin=0.0, dtmax=np.inf, tstops=(), abstol=1e-6, verbose=True, p=None):
        self.u = u
        self.rate = rate
        self.t = t
        self.tdir = tdir
        self.dt = tdir * dt
        self.p = p
        self.opts = SimpleNamespace(abstol=abstol, verbose=verbose, dtmin=dtmin, dtmax=dtmax)
        self.tstops = list(tstops)
        self.samples = []
        self.modified = None
        self._proposed = tdir * proposed

    def __call__(self, t, out=None):
        self.samples.append(t)
        value = self.u + self.rate * (t - self.t)
        if out is None:
            return value
        out[...] = value
        return out

    def get_proposed_dt(self):
        return self._proposed

    def set_proposed_dt(self, dt):
        self._proposed = dt

    def fix_dt_at_bounds(self):
        adt = max(min(abs(self.dt), self.opts.dtmax), self.opts.dtmin)
        self.dt = self.tdir * adt

    def modify_dt_for_tstops(self):
        ahead = [s for s in self.tstops if self.tdir * (s - self.t) > 0]
        if ahead:
            dist = min(self.tdir * (s - self.t) for s in ahead)
            if abs(self.dt) > dist:
                self.dt = self.tdir * dist

    def u_modified(self, modified):
        self.modified = modified


@pytest.fixture
def linear_integrator():
    return LinearIntegrator
