"""
Algorithms
==========

Joint bilateral upsampling, support-point selection and planar-prior fitting.
"""

from .upsampling import JointBilateralUpsampler, UpsampleResult, infer_scale, upsample_to_results
from .support_points import SupportPointSelector, select_support_points
from .planar_prior import PlanarPriorFitter, triangulate

__all__ = [
    'JointBilateralUpsampler',
    'UpsampleResult',
    'infer_scale',
    'upsample_to_results',
    'SupportPointSelector',
    'select_support_points',
    'PlanarPriorFitter',
    'triangulate',
]
