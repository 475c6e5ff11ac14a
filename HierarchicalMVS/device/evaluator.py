"""
Base interface for cost evaluators.

A cost evaluator is the per-pixel PatchMatch kernel: it reads the image and
depth samplers, the camera array and the current hypotheses of a workspace,
and writes refined plane hypotheses and costs back into the workspace's
device buffers. It does not synchronize; the caller does, before reading.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from .workspace import Workspace


class CostEvaluator(ABC):
    """
    Abstract base class for accelerator-side hypothesis refinement.

    Implementations write the ``plane_hypotheses`` and ``costs`` buffers of
    the workspace in place and may use its ``rand_states``,
    ``selected_views``, ``depths`` and ``pre_costs`` scratch buffers; when the
    workspace carries ``prior_planes``/``plane_masks`` they regularize with
    them.
    """

    @abstractmethod
    def evaluate(self, workspace: Workspace) -> None:
        """Run the refinement on ``workspace``"""

    def get_info(self) -> Dict[str, Any]:
        """Describe the evaluator for logs"""
        return {'name': self.__class__.__name__}
