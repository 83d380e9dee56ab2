__all__ = ["SapConstraint", "SapConstraintBundle"]

from .bundle import SapConstraintBundle
from .constraint import SapConstraint
