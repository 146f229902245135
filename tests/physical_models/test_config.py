import pytest
import torch
from diffphenology.physical_models.config import ComputeConfig
from diffphenology.physical_models.crop.phases import Phase


@pytest.fixture(autouse=True)
def restore_compute_config():
    yield
    ComputeConfig.reset_to_defaults()


class TestComputeConfig:
    def test_defaults(self):
        assert ComputeConfig.get_dtype() == torch.float64
        assert ComputeConfig.get_device() == torch.device("cpu")

    def test_dtype_can_be_changed_and_reset(self):
        ComputeConfig.set_dtype(torch.float32)
        assert ComputeConfig.get_dtype() == torch.float32
        ComputeConfig.reset_to_defaults()
        assert ComputeConfig.get_dtype() == torch.float64

    @pytest.mark.parametrize("dtype", [torch.int64, torch.bool, "float32"])
    def test_non_floating_dtype_is_refused(self, dtype):
        with pytest.raises(ValueError):
            ComputeConfig.set_dtype(dtype)

    def test_device_accepts_torch_device(self):
        ComputeConfig.set_device(torch.device("cpu"))
        assert ComputeConfig.get_device() == torch.device("cpu")

    def test_cuda_is_refused_when_not_available(self):
        if torch.cuda.is_available():
            pytest.skip("CUDA available")
        with pytest.raises(ValueError):
            ComputeConfig.set_device("cuda")

    def test_new_tensors_follow_the_configuration(self):
        ComputeConfig.set_dtype(torch.float32)
        phase = Phase({"NAME": "Vegetative", "START": "A", "END": "B", "TTTARGET": 10})
        assert phase.target.dtype == torch.float32
        assert phase.states.PROGRESS.dtype == torch.float32
        assert phase.advance(1.0, 4.0).dtype == torch.float32

    def test_device_fixture_sets_the_device(self, device):
        assert ComputeConfig.get_device().type == device
        phase = Phase({"NAME": "Vegetative", "START": "A", "END": "B", "TTTARGET": 10})
        assert phase.target.device.type == device
