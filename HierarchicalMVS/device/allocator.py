"""
Device Arena
============

Tracked, resolution-tagged device buffers and texture-like samplers on a
torch device. Every allocation is recorded in an arena keyed by buffer name,
so a partially initialized set of buffers can always be released as a whole.

Samplers reference the array they read from; an array cannot be freed while
a live sampler still references it.
"""

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from ..core.structures import Resolution
from ..logger import get_logger

logger = get_logger("device")


class DeviceAllocationError(RuntimeError):
    """A device allocation or host-to-device copy could not be satisfied"""


def resolve_device(device: Union[str, torch.device] = 'auto') -> torch.device:
    """
    Resolve a device name.

    Args:
        device: 'auto' (CUDA when available, else CPU), 'cuda', 'cpu' or a torch.device
    """
    if isinstance(device, torch.device):
        return device
    if device == 'auto':
        return torch.device('cuda' if torch.cuda.is_available() else 'cpu')
    if device == 'cuda' and not torch.cuda.is_available():
        raise DeviceAllocationError("CUDA device requested but torch.cuda is not available")
    return torch.device(device)


def synchronize(device: torch.device):
    """Device-wide barrier; a no-op on CPU where every op has already completed"""
    if device.type == 'cuda':
        torch.cuda.synchronize(device)


@dataclass
class DeviceBuffer:
    """
    One device allocation.

    Attributes:
        name: Arena key
        tensor: Device storage
        resolution: Pixel grid the buffer was sized for, None for non-image buffers
    """
    name: str
    tensor: torch.Tensor
    resolution: Optional[Resolution] = None

    @property
    def nbytes(self) -> int:
        return self.tensor.element_size() * self.tensor.nelement()

    def upload(self, array: np.ndarray):
        """Host-to-device copy; the host array must match the buffer shape exactly"""
        array = np.ascontiguousarray(array)
        if array.dtype == np.uint32:
            # torch has no general-purpose uint32 tensors
            array = array.astype(np.int64)
        if tuple(array.shape) != tuple(self.tensor.shape):
            raise ValueError(
                f"Cannot upload {array.shape} into buffer '{self.name}' of shape {tuple(self.tensor.shape)}"
            )
        try:
            self.tensor.copy_(torch.from_numpy(array).to(self.tensor.dtype))
        except RuntimeError as e:
            raise DeviceAllocationError(f"Host-to-device copy into '{self.name}' failed: {e}") from e

    def download(self) -> np.ndarray:
        """Device-to-host copy; callers synchronize the device first"""
        return self.tensor.detach().cpu().numpy().copy()

    def check_resolution(self, resolution: Resolution):
        """Assert that a per-pixel operation at ``resolution`` fits this buffer"""
        if self.resolution != resolution:
            raise ValueError(
                f"Buffer '{self.name}' is sized for {self.resolution}, not {resolution}"
            )


@dataclass
class Sampler:
    """
    Read-only, linearly interpolated view of a 2D device array.

    Pixel coordinates address texel centers: sampling at integer (x, y)
    returns the stored value exactly. Out-of-range coordinates wrap around or
    clamp to the border depending on ``address_mode``.
    """
    name: str
    source: DeviceBuffer
    address_mode: str = 'wrap'

    @property
    def resolution(self) -> Resolution:
        return self.source.resolution

    def _index(self, ix: torch.Tensor, iy: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        height, width = self.source.tensor.shape[:2]
        if self.address_mode == 'wrap':
            return torch.remainder(ix, width), torch.remainder(iy, height)
        return ix.clamp(0, width - 1), iy.clamp(0, height - 1)

    def fetch(self, ix: torch.Tensor, iy: torch.Tensor) -> torch.Tensor:
        """Unfiltered read at integer texel coordinates"""
        ix, iy = self._index(ix.long(), iy.long())
        return self.source.tensor[iy, ix]

    def sample(self, x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        """Bilinear read at fractional pixel coordinates"""
        x = x.to(torch.float32)
        y = y.to(torch.float32)
        x0 = torch.floor(x)
        y0 = torch.floor(y)
        wx = x - x0
        wy = y - y0
        if self.source.tensor.dim() == 3:
            wx = wx.unsqueeze(-1)
            wy = wy.unsqueeze(-1)

        x0 = x0.long()
        y0 = y0.long()
        v00 = self.fetch(x0, y0)
        v10 = self.fetch(x0 + 1, y0)
        v01 = self.fetch(x0, y0 + 1)
        v11 = self.fetch(x0 + 1, y0 + 1)

        return ((1 - wx) * (1 - wy) * v00 + wx * (1 - wy) * v10
                + (1 - wx) * wy * v01 + wx * wy * v11)


class DeviceArena:
    """
    Arena of named device allocations.

    Usage:
        arena = DeviceArena(torch.device('cpu'))
        costs = arena.allocate('costs', (480, 640), torch.float32, Resolution(640, 480))
        image = arena.upload('array:image:0', gray, Resolution.of(gray))
        tex = arena.bind_sampler('sampler:image:0', 'array:image:0')
        ...
        arena.release_all()
    """

    def __init__(self, device: Union[str, torch.device] = 'auto', name: str = "arena"):
        self.device = resolve_device(device)
        self.name = name
        self._entries: 'OrderedDict[str, Union[DeviceBuffer, Sampler]]' = OrderedDict()
        self.stats = {
            'allocations': 0,
            'frees': 0,
            'bytes_live': 0,
            'bytes_peak': 0,
        }

    # ------------------------------------------------------------------
    # Allocation hooks (overridden by tracking/failing arenas in tests)
    # ------------------------------------------------------------------

    def _allocate_tensor(self, shape: Sequence[int], dtype: torch.dtype) -> torch.Tensor:
        return torch.zeros(tuple(shape), dtype=dtype, device=self.device)

    def _release_tensor(self, buffer: DeviceBuffer):
        buffer.tensor = None

    # ------------------------------------------------------------------

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def live(self) -> List[str]:
        """Names of every live buffer and sampler, in acquisition order"""
        return list(self._entries.keys())

    def buffer(self, name: str) -> DeviceBuffer:
        entry = self._entries[name]
        if not isinstance(entry, DeviceBuffer):
            raise TypeError(f"'{name}' is a sampler, not a buffer")
        return entry

    def sampler(self, name: str) -> Sampler:
        entry = self._entries[name]
        if not isinstance(entry, Sampler):
            raise TypeError(f"'{name}' is a buffer, not a sampler")
        return entry

    def allocate(self, name: str, shape: Sequence[int], dtype: torch.dtype = torch.float32,
                 resolution: Optional[Resolution] = None) -> DeviceBuffer:
        """
        Allocate a zero-initialized device buffer.

        Raises:
            ValueError: If ``name`` is already live
            DeviceAllocationError: If the device cannot satisfy the request
        """
        if name in self._entries:
            raise ValueError(f"Buffer '{name}' is already allocated in {self.name}")
        if resolution is not None and tuple(shape[:2]) != resolution.shape:
            raise ValueError(f"Buffer '{name}' shape {tuple(shape)} does not match resolution {resolution}")

        try:
            tensor = self._allocate_tensor(shape, dtype)
        except RuntimeError as e:
            logger.critical(f"Device allocation of '{name}' {tuple(shape)} on {self.device} failed: {e}")
            raise DeviceAllocationError(f"Failed to allocate '{name}' {tuple(shape)}: {e}") from e

        buffer = DeviceBuffer(name=name, tensor=tensor, resolution=resolution)
        self._entries[name] = buffer
        self.stats['allocations'] += 1
        self.stats['bytes_live'] += buffer.nbytes
        self.stats['bytes_peak'] = max(self.stats['bytes_peak'], self.stats['bytes_live'])
        logger.debug(f"[{self.name}] + {name} {tuple(shape)} {dtype}")
        return buffer

    def upload(self, name: str, array: np.ndarray, resolution: Optional[Resolution] = None,
               dtype: torch.dtype = torch.float32) -> DeviceBuffer:
        """Allocate a buffer shaped like ``array`` and copy the host data into it"""
        buffer = self.allocate(name, array.shape, dtype, resolution)
        buffer.upload(array)
        return buffer

    def bind_sampler(self, name: str, source: str, address_mode: str = 'wrap') -> Sampler:
        """Bind a sampler over a live 2D buffer"""
        if name in self._entries:
            raise ValueError(f"Sampler '{name}' is already bound in {self.name}")
        if address_mode not in ('wrap', 'clamp'):
            raise ValueError(f"Unknown address mode '{address_mode}'")
        sampler = Sampler(name=name, source=self.buffer(source), address_mode=address_mode)
        self._entries[name] = sampler
        self.stats['allocations'] += 1
        logger.debug(f"[{self.name}] + sampler {name} -> {source}")
        return sampler

    def free(self, name: str):
        """
        Release one buffer or sampler.

        Raises:
            KeyError: If ``name`` is not live (double free)
            ValueError: If a live sampler still references the buffer
        """
        entry = self._entries[name]
        if isinstance(entry, DeviceBuffer):
            referencing = [s.name for s in self._entries.values()
                           if isinstance(s, Sampler) and s.source is entry]
            if referencing:
                raise ValueError(f"Cannot free '{name}': still referenced by {referencing}")
            self.stats['bytes_live'] -= entry.nbytes
            self._release_tensor(entry)

        del self._entries[name]
        self.stats['frees'] += 1
        logger.debug(f"[{self.name}] - {name}")

    def free_many(self, names: Sequence[str]):
        """Release a group of entries, samplers first, then buffers in reverse order"""
        live = [n for n in names if n in self._entries]
        samplers = [n for n in live if isinstance(self._entries[n], Sampler)]
        buffers = [n for n in live if isinstance(self._entries[n], DeviceBuffer)]
        for name in reversed(samplers):
            self.free(name)
        for name in reversed(buffers):
            self.free(name)

    def release_all(self):
        """Release every live entry"""
        if self._entries:
            logger.debug(f"[{self.name}] releasing {len(self._entries)} live entries")
        self.free_many(list(self._entries.keys()))

    @contextmanager
    def scope(self) -> Iterator['DeviceArena']:
        """Release everything acquired in this arena when the block exits, on any path"""
        try:
            yield self
        finally:
            self.release_all()

    def synchronize(self):
        synchronize(self.device)

    def summary(self) -> Dict[str, int]:
        return dict(self.stats, live=len(self._entries))
