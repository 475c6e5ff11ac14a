"""
Accelerator Resources
=====================

Device arena, per-problem workspace and the cost-evaluator interface.
"""

from .allocator import (
    DeviceAllocationError,
    DeviceArena,
    DeviceBuffer,
    Sampler,
    resolve_device,
    synchronize,
)
from .workspace import Workspace, DepthRange
from .evaluator import CostEvaluator

__all__ = [
    'DeviceAllocationError',
    'DeviceArena',
    'DeviceBuffer',
    'Sampler',
    'resolve_device',
    'synchronize',
    'Workspace',
    'DepthRange',
    'CostEvaluator',
]
