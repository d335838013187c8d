"""
odedomain: keep the solution of an ODE inside a domain.

After each accepted step of an adaptive integrator, a callback probes the
next proposed step with dense output and shrinks it until the predicted state
is non-negative (``PositiveDomain``) or has a residual below tolerance
(``GeneralDomain``).
"""

from odedomain.callbacks import CallbackSet, DiscreteCallback
from odedomain.domain import (
    GeneralDomain,
    GeneralDomainAffect,
    PositiveDomain,
    PositiveDomainAffect,
)
from odedomain.manifold import ManifoldProjection, manifold_projection
from odedomain.odeint import IntegratorOptions, ODEIntegrator, ODESolution, odeint

__version__ = "0.1.0"
__all__ = [
    "__version__",
    "CallbackSet",
    "DiscreteCallback",
    "GeneralDomain",
    "GeneralDomainAffect",
    "IntegratorOptions",
    "ManifoldProjection",
    "ODEIntegrator",
    "ODESolution",
    "PositiveDomain",
    "PositiveDomainAffect",
    "manifold_projection",
    "odeint",
]
