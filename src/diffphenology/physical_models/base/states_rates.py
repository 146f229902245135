from pcse.base import ParamTemplate
from pcse.traitlets import HasTraits
from ..traitlets import Tensor


class TensorContainer(HasTraits):
    def __init__(self, **variables):
        """Container of scalar tensor variables.

        The phenology models track a single crop, so every tensor variable has to be a
        0-d tensor. Values of other shapes are refused when the container is created.

        Args:
            variables (dict): Collection of variables to initialize the container, as key-value
                pairs.
        """
        HasTraits.__init__(self, **variables)
        self._check_scalar_variables()

    @property
    def _tensor_variables(self):
        return [key for key, trait in self.traits().items() if isinstance(trait, Tensor)]

    def as_dict(self):
        """Return the tensor variables as a name -> tensor mapping."""
        return {varname: getattr(self, varname) for varname in self._tensor_variables}

    def update(self, **variables):
        """Assign several tensor variables at once."""
        for varname, value in variables.items():
            if varname not in self._tensor_variables:
                raise AttributeError(f"{self.__class__.__name__} has no variable {varname}")
            setattr(self, varname, value)

    def _check_scalar_variables(self):
        for varname, var in self.as_dict().items():
            if var.dim() != 0:
                msg = f"Variable {varname} must be a scalar, got shape {tuple(var.shape)}"
                raise ValueError(msg)


class TensorParamTemplate(TensorContainer, ParamTemplate):
    def __init__(self, parvalues):
        ParamTemplate.__init__(self, parvalues=parvalues)
        self._check_scalar_variables()
