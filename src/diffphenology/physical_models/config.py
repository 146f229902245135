"""Process-wide compute settings for the tensors used by the phenology models."""

import torch

DEFAULT_DTYPE = torch.float64
DEFAULT_DEVICE = "cpu"


class ComputeConfig:
    """Device and dtype used when casting values into tensors.

    The settings are class attributes so that every `Tensor` trait in the process picks
    up the same configuration. Tests switch the device through the `device` fixture and
    restore the defaults afterwards.

    example::

        >>> ComputeConfig.set_dtype(torch.float32)
        >>> ComputeConfig.get_dtype()
        torch.float32
        >>> ComputeConfig.reset_to_defaults()
    """

    _device = DEFAULT_DEVICE
    _dtype = DEFAULT_DTYPE

    @classmethod
    def get_device(cls):
        """Return the device on which new tensors are allocated."""
        return torch.device(cls._device)

    @classmethod
    def set_device(cls, device):
        """Set the device for new tensors, e.g. "cpu" or "cuda"."""
        if isinstance(device, torch.device):
            device = device.type
        if device == "cuda" and not torch.cuda.is_available():
            raise ValueError("CUDA device requested but CUDA is not available")
        cls._device = device

    @classmethod
    def get_dtype(cls):
        """Return the floating point dtype for new tensors."""
        return cls._dtype

    @classmethod
    def set_dtype(cls, dtype):
        """Set the floating point dtype for new tensors."""
        if not isinstance(dtype, torch.dtype) or not dtype.is_floating_point:
            raise ValueError(f"Expected a floating point torch dtype, got {dtype!r}")
        cls._dtype = dtype

    @classmethod
    def reset_to_defaults(cls):
        """Restore the default device and dtype."""
        cls._device = DEFAULT_DEVICE
        cls._dtype = DEFAULT_DTYPE
