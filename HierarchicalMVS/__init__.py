"""
HierarchicalMVS
===============

Workspace, upsampling and planar-prior components of a hierarchical
PatchMatch multi-view stereo reconstruction.

Usage:
    from HierarchicalMVS import HierarchicalMVSPipeline, MVSConfig, ModeFlags

    pipeline = HierarchicalMVSPipeline(evaluator, "scene/dense", MVSConfig())
    pipeline.run(flags=ModeFlags(hierarchy=True))
"""

from .config import (
    MVSConfig,
    JBUConfig,
    SupportPointConfig,
    PlanarPriorConfig,
    get_preset_config,
)
from .core import Camera, ModeFlags, Resolution, PriorField, Problem
from .device import CostEvaluator, DeviceAllocationError, DeviceArena, Workspace
from .algorithms import JointBilateralUpsampler, PlanarPriorFitter, SupportPointSelector
from .io import ImageCameraLoader, read_dmb, write_dmb, export_point_cloud
from .pipeline import HierarchicalMVSPipeline

__version__ = '1.0.0'

__all__ = [
    'MVSConfig',
    'JBUConfig',
    'SupportPointConfig',
    'PlanarPriorConfig',
    'get_preset_config',
    'Camera',
    'ModeFlags',
    'Resolution',
    'PriorField',
    'Problem',
    'CostEvaluator',
    'DeviceAllocationError',
    'DeviceArena',
    'Workspace',
    'JointBilateralUpsampler',
    'PlanarPriorFitter',
    'SupportPointSelector',
    'ImageCameraLoader',
    'read_dmb',
    'write_dmb',
    'export_point_cloud',
    'HierarchicalMVSPipeline',
]
