from .states_rates import TensorContainer
from .states_rates import TensorParamTemplate

__all__ = [
    "TensorContainer",
    "TensorParamTemplate",
]
