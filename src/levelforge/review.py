"""
Reviewer decisions for outlier measurements.

The energy and intensity fits hand every outlier to a :class:`Reviewer` and
block until it answers. The reviewer may accept the suggested larger
uncertainty, supply its own, or decline. Headless implementations are
provided for batch runs and tests.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from levelforge.core.model import Transition

logger = logging.getLogger(__name__)


class ReviewAction(Enum):
    """Reviewer answer to an uncertainty increase request."""

    ACCEPT = "accept"
    ACCEPT_CUSTOM = "accept_custom"
    DECLINE = "decline"


@dataclass(frozen=True)
class ReviewDecision:
    action: ReviewAction
    sigma: Optional[float] = None

    @classmethod
    def accept(cls) -> "ReviewDecision":
        return cls(ReviewAction.ACCEPT)

    @classmethod
    def accept_custom(cls, sigma: float) -> "ReviewDecision":
        return cls(ReviewAction.ACCEPT_CUSTOM, float(sigma))

    @classmethod
    def decline(cls) -> "ReviewDecision":
        return cls(ReviewAction.DECLINE)

    def resolved_sigma(self, suggested: float) -> Optional[float]:
        """Uncertainty to apply, or None when nothing should change."""
        if self.action is ReviewAction.ACCEPT:
            return suggested
        if self.action is ReviewAction.ACCEPT_CUSTOM and self.sigma is not None and self.sigma > 0.0:
            return self.sigma
        return None


@dataclass
class ReviewContext:
    """
    Information shown to a reviewer alongside an outlier.

    Attributes:
        kind: 'energy' or 'intensity'
        transition: Handle of the outlying transition
        parent: Handle of its parent level
        measured: Measured value
        fitted: Value predicted by the fit
        sigma: Current uncertainty of the measurement
        n_sigma: Deviation in units of ``sigma``
        competing: (dataset, value, uncertainty) of the other measurements
            of the same quantity
    """

    kind: str
    transition: int
    parent: Optional[int]
    measured: float
    fitted: float
    sigma: float
    n_sigma: float
    competing: List[Tuple[str, Optional[float], Optional[float]]] = field(default_factory=list)

    def describe(self) -> str:
        lines = [
            f"{self.kind} outlier: measured {self.measured:g} +/- {self.sigma:g}, "
            f"fitted {self.fitted:g} ({self.n_sigma:.1f} sigma)"
        ]
        for dataset, value, sigma in self.competing:
            lines.append(f"  {dataset}: {value} +/- {sigma}")
        return "\n".join(lines)


class Reviewer(ABC):
    """Source of human (or scripted) judgment for the fit loops."""

    @abstractmethod
    def request_uncertainty_increase(
        self,
        transition: Transition,
        context: ReviewContext,
        suggested_sigma: float,
    ) -> ReviewDecision:
        """Decide whether ``transition`` may carry ``suggested_sigma``."""

    def choose_reference_dataset(self, sources: Sequence[str]) -> Optional[str]:
        """Standard dataset for linear energy shifts; None skips them."""
        return None


class DecliningReviewer(Reviewer):
    """Declines every request."""

    def __init__(self) -> None:
        self.calls = 0

    def request_uncertainty_increase(self, transition, context, suggested_sigma):
        self.calls += 1
        logger.info(f"Declined uncertainty increase for {context.kind} {transition.energy_text}")
        return ReviewDecision.decline()


class AcceptingReviewer(Reviewer):
    """Accepts every suggested uncertainty; optionally names a standard dataset."""

    def __init__(self, reference_dataset: Optional[str] = None) -> None:
        self.calls = 0
        self.reference_dataset = reference_dataset

    def request_uncertainty_increase(self, transition, context, suggested_sigma):
        self.calls += 1
        logger.info(
            f"Accepted {context.kind} uncertainty {suggested_sigma:g} for "
            f"transition {transition.energy_text} ({transition.dataset})"
        )
        return ReviewDecision.accept()

    def choose_reference_dataset(self, sources):
        if self.reference_dataset in sources:
            return self.reference_dataset
        return None


class CallbackReviewer(Reviewer):
    """Delegates decisions to a plain function ``(transition, context, sigma) -> ReviewDecision``."""

    def __init__(
        self,
        callback: Callable[[Transition, ReviewContext, float], ReviewDecision],
        reference_dataset: Optional[str] = None,
    ) -> None:
        self.callback = callback
        self.reference_dataset = reference_dataset
        self.history: List[ReviewContext] = []

    def request_uncertainty_increase(self, transition, context, suggested_sigma):
        self.history.append(context)
        return self.callback(transition, context, suggested_sigma)

    def choose_reference_dataset(self, sources):
        if self.reference_dataset in sources:
            return self.reference_dataset
        return None
