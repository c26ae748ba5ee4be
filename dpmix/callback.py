"""
Callback Component - pluggable hooks observing the fitting loop.

The fitting loop calls, for every iteration i and in this order:
before_step_(i), during_step_(i, params), after_step_(i). All calls come from
the coordinator thread, so implementations need no locking.

CODING CONVENTION:
------------------
Functions with side effects or mutations have an underscore suffix (_).
Pure functions (no side effects, no mutations) have no underscore.
"""
from dpmix.configs import ThinParams


class Callback:
    """Base class for fitting callbacks. Every hook is a no-op by default."""

    def before_step_(self, i: int) -> None:
        """
        Called before the work of an iteration starts.

        Args:
            i: The current iteration
        """

    def during_step_(self, i: int, params: ThinParams) -> None:
        """
        Called once the global parameters of the iteration are updated.

        Args:
            i: The current iteration
            params: The current parameters of the model, valid during this call only
        """

    def after_step_(self, i: int) -> None:
        """
        Called after the iteration is complete.

        Args:
            i: The current iteration
        """
