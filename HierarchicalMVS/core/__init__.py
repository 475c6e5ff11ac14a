"""
Core Geometry and Data Structures
=================================

Camera model, projection math and the value types shared across the package.
"""

from .camera import (
    Camera,
    backproject_to_ref,
    backproject_to_world,
    project,
    depth_from_plane,
    distance_to_origin,
    planes_from_depth_normals,
    depths_from_planes,
    normal_to_world,
    normal_to_ref,
    angle_between,
)
from .structures import (
    ModeFlags,
    Resolution,
    SupportPoint,
    SupportPointKind,
    Triangle,
    PlaneFit,
    PriorField,
    Problem,
)

__all__ = [
    'Camera',
    'backproject_to_ref',
    'backproject_to_world',
    'project',
    'depth_from_plane',
    'distance_to_origin',
    'planes_from_depth_normals',
    'depths_from_planes',
    'normal_to_world',
    'normal_to_ref',
    'angle_between',
    'ModeFlags',
    'Resolution',
    'SupportPoint',
    'SupportPointKind',
    'Triangle',
    'PlaneFit',
    'PriorField',
    'Problem',
]
