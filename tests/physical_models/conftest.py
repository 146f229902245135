import pytest
import torch
from diffphenology.physical_models.config import ComputeConfig


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    """Parametrize tests over CPU and GPU devices.

    Sets the global ComputeConfig to use the specified device.
    Skips CUDA runs when CUDA isn't available.
    """

    device_name = request.param
    if device_name == "cuda" and not torch.cuda.is_available():
        pytest.skip("CUDA not available")

    # Set the global ComputeConfig to use the specified device
    ComputeConfig.set_device(device_name)

    yield device_name

    # Reset to defaults after the test
    ComputeConfig.reset_to_defaults()
