"""
I/O and Format Conversion
=========================

Binary matrices, PLY export, and the dense-folder image/camera loader.
"""

from .dmb import (
    read_dmb,
    write_dmb,
    read_depth_dmb,
    read_normal_dmb,
    write_depth_dmb,
    write_normal_dmb,
)
from .ply import export_point_cloud, read_point_cloud, depth_map_to_point_cloud
from .loader import (
    ImageCameraLoader,
    ProblemInputs,
    read_camera,
    write_camera,
    read_pair_file,
    rescale_to_max_size,
    rescale_to_match,
)

__all__ = [
    'read_dmb',
    'write_dmb',
    'read_depth_dmb',
    'read_normal_dmb',
    'write_depth_dmb',
    'write_normal_dmb',
    'export_point_cloud',
    'read_point_cloud',
    'depth_map_to_point_cloud',
    'ImageCameraLoader',
    'ProblemInputs',
    'read_camera',
    'write_camera',
    'read_pair_file',
    'rescale_to_max_size',
    'rescale_to_match',
]
