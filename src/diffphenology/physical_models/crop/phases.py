"""Phenological phases and the ordered phase list.

This module implements:
- Phase: a stage-to-stage segment completed by accumulating a thermal time target.
- GotoPhase: a zero-duration phase redirecting development to another phase.
- PhaseList: the ordered, named sequence of phases owned by one phenology engine.
"""

import logging
import weakref
import torch
from pcse.traitlets import HasTraits
from pcse.traitlets import Instance
from traitlets_pcse import Unicode
from diffphenology.physical_models.base import TensorContainer
from diffphenology.physical_models.base import TensorParamTemplate
from diffphenology.physical_models.config import ComputeConfig
from diffphenology.physical_models.exceptions import PhaseNotFoundError
from diffphenology.physical_models.exceptions import PhenologyError
from diffphenology.physical_models.traitlets import Tensor


class Phase(HasTraits):
    """A developmental phase bound by a start and an end stage.

    A phase accumulates thermal time until its target is exceeded. The daily thermal
    time is handed out as a fraction of the day: the first phase of the day receives
    the whole day (`fraction=1`), later phases of a same-day cascade receive the
    fraction that the previous phase did not need. The leftover is always expressed
    as a fraction of the day's thermal time, not of calendar time.

    **Simulation parameters**

    | Name     | Description                                  | Type | Unit    |
    |----------|----------------------------------------------|------|---------|
    | NAME     | Name of the phase                            | SCr  | -       |
    | START    | Name of the stage that starts the phase      | SCr  | -       |
    | END      | Name of the stage that ends the phase        | SCr  | -       |
    | TTTARGET | Thermal time needed to complete the phase    | SCr  | |C| day |

    **State variables**

    | Name      | Description                                          | Pbl | Unit    |
    |-----------|------------------------------------------------------|-----|---------|
    | PROGRESS  | Thermal time counted towards TTTARGET                | N   | |C| day |
    | TTINPHASE | Thermal time consumed since the phase was entered    | N   | |C| day |
    | TTTODAY   | Thermal time consumed in the last `advance` call     | N   | |C| day |

    PROGRESS and TTINPHASE are equal while the phase develops normally. They differ
    after `Phenology.reset_to_stage` positioned the phase part way through: only
    TTINPHASE is thermal time that the engine ledger has to unwind on a rewind.
    """

    is_redirect = False

    class Parameters(TensorParamTemplate):
        NAME = Unicode()
        START = Unicode()
        END = Unicode()
        TTTARGET = Tensor(-99.0)

    class StateVariables(TensorContainer):
        PROGRESS = Tensor(0.0)
        TTINPHASE = Tensor(0.0)
        TTTODAY = Tensor(0.0)

    params = Instance(TensorParamTemplate)
    states = Instance(TensorContainer)

    def __init__(self, parvalues):
        HasTraits.__init__(self)
        self._owner = None
        self.params = self.Parameters(parvalues)
        self._check_parameters()
        self.states = self.StateVariables()
        self.reset()

    def _check_parameters(self):
        if not self.name:
            raise PhenologyError("A phase needs a non-empty NAME")
        if torch.any(self.params.TTTARGET < 0):
            msg = f"TTTARGET of phase {self.name} must not be negative: {self.params.TTTARGET}"
            raise PhenologyError(msg)

    @property
    def logger(self):
        loggername = f"{self.__class__.__module__}.{self.__class__.__name__}"
        return logging.getLogger(loggername)

    @property
    def name(self):
        return self.params.NAME

    @property
    def start(self):
        return self.params.START

    @property
    def end(self):
        return self.params.END

    @property
    def target(self):
        return self.params.TTTARGET

    @property
    def tt_in_phase(self):
        return self.states.TTINPHASE

    @property
    def tt_today(self):
        return self.states.TTTODAY

    @property
    def fraction_complete(self):
        """Fraction of TTTARGET reached, 0 for a phase without target."""
        if self.target > 0:
            return self.states.PROGRESS / self.target
        return self._zeros()

    @fraction_complete.setter
    def fraction_complete(self, value):
        value = self._as_tensor(value)
        if value < 0 or value > 1:
            raise ValueError(f"Fraction complete must be within [0, 1], got {float(value)}")
        # Progress is kept in thermal time, a phase without target cannot hold a fraction.
        if value > 0 and self.target <= 0:
            msg = f"Phase {self.name} has no thermal time target to set fraction {float(value)}"
            raise ValueError(msg)
        self.states.PROGRESS = value * self.target

    def advance(self, fraction, driver):
        """Develop the phase with `fraction` of the day's thermal time `driver`.

        Args:
            fraction (float | torch.Tensor): Fraction of the day that is still available.
            driver (float | torch.Tensor): Thermal time of the whole day.

        Returns:
            torch.Tensor: zero while the target is not exceeded, otherwise the fraction
                of the day's thermal time that this phase did not use.
        """
        fraction = self._as_tensor(fraction)
        driver = self._as_tensor(driver)
        s = self.states

        tt_today = driver * fraction
        progress = s.PROGRESS + tt_today
        tt_in_phase = s.TTINPHASE + tt_today

        if progress > self.target:
            unused = progress - self.target
            leftover = unused / driver if driver > 0 else fraction
            s.update(
                PROGRESS=self.target, TTINPHASE=tt_in_phase - unused, TTTODAY=tt_today - unused
            )
            return leftover

        s.update(PROGRESS=progress, TTINPHASE=tt_in_phase, TTTODAY=tt_today)
        return self._zeros()

    def reset(self):
        """Zero the progress and thermal time accumulators."""
        self.states.update(PROGRESS=self._zeros(), TTINPHASE=self._zeros(), TTTODAY=self._zeros())

    def get_state(self):
        return self.states.as_dict()

    def set_state(self, state):
        self.states.update(**state)

    def claim(self, owner):
        """Register `owner` as the only phenology engine using this phase."""
        current = self._owner() if self._owner is not None else None
        if current is not None and current is not owner:
            raise PhenologyError(f"Phase {self.name} already belongs to another phenology engine")
        self._owner = weakref.ref(owner)

    def _as_tensor(self, value):
        return torch.as_tensor(
            value, dtype=ComputeConfig.get_dtype(), device=ComputeConfig.get_device()
        )

    def _zeros(self):
        return torch.zeros((), dtype=ComputeConfig.get_dtype(), device=ComputeConfig.get_device())

    def __repr__(self):
        return f"{self.__class__.__name__}({self.name}: {self.start} -> {self.end})"


class GotoPhase(Phase):
    """A phase that sends development to another phase.

    It completes instantly: `advance` hands back the full fraction it received and the
    engine continues in the phase named by PHASE_NAME_TO_GOTO. Development is treated
    as ongoing, so the engine resets the phases it jumps over but does not unwind
    their thermal time.

    **Simulation parameters**

    | Name               | Description                            | Type | Unit |
    |--------------------|----------------------------------------|------|------|
    | NAME               | Name of the phase                      | SCr  | -    |
    | START              | Name of the stage that starts the phase| SCr  | -    |
    | END                | Name of the stage that ends the phase  | SCr  | -    |
    | PHASE_NAME_TO_GOTO | Name of the phase to continue in       | SCr  | -    |
    """

    is_redirect = True

    class Parameters(TensorParamTemplate):
        NAME = Unicode()
        START = Unicode()
        END = Unicode()
        PHASE_NAME_TO_GOTO = Unicode()

    def _check_parameters(self):
        if not self.name:
            raise PhenologyError("A phase needs a non-empty NAME")
        if not self.phase_name_to_goto:
            raise PhenologyError(f"Goto phase {self.name} needs a PHASE_NAME_TO_GOTO")

    @property
    def phase_name_to_goto(self):
        return self.params.PHASE_NAME_TO_GOTO

    @property
    def target(self):
        return self._zeros()

    @property
    def fraction_complete(self):
        return self._zeros()

    @fraction_complete.setter
    def fraction_complete(self, value):
        raise PhenologyError(f"Goto phase {self.name} has no progress to set")

    def advance(self, fraction, driver):
        self.states.TTTODAY = self._zeros()
        return self._as_tensor(fraction)


class PhaseList:
    """Ordered sequence of phases, in developmental order.

    Name lookups ignore case and resolve to the first match.
    """

    def __init__(self, phases):
        self._phases = list(phases)
        if not self._phases:
            raise PhenologyError("Phenology needs at least one phase")
        for phase in self._phases:
            if not isinstance(phase, Phase):
                raise PhenologyError(f"Expected a Phase, got {phase!r}")

    def __len__(self):
        return len(self._phases)

    def __getitem__(self, index):
        return self._phases[index]

    def __iter__(self):
        return iter(self._phases)

    def __repr__(self):
        return f"PhaseList({', '.join(phase.name for phase in self._phases)})"

    @property
    def names(self):
        return [phase.name for phase in self._phases]

    @property
    def last_index(self):
        return len(self._phases) - 1

    def index_of_phase(self, name):
        """Index of the phase called `name`, or -1."""
        return self._first_index(lambda phase: phase.name, name)

    def index_of_start(self, stage_name):
        """Index of the phase starting with `stage_name`, or -1."""
        return self._first_index(lambda phase: phase.start, stage_name)

    def index_of_end(self, stage_name):
        """Index of the phase ending with `stage_name`, or -1."""
        return self._first_index(lambda phase: phase.end, stage_name)

    def phase_starting_with(self, stage_name):
        index = self.index_of_start(stage_name)
        if index == -1:
            raise PhaseNotFoundError(f"Unable to find phase starting with {stage_name}")
        return self._phases[index]

    def _first_index(self, key, name):
        wanted = name.lower()
        for index, phase in enumerate(self._phases):
            if key(phase).lower() == wanted:
                return index
        return -1


def phase_from_parameters(parvalues):
    """Create a `GotoPhase` when PHASE_NAME_TO_GOTO is given, a `Phase` otherwise."""
    if "PHASE_NAME_TO_GOTO" in parvalues:
        return GotoPhase(parvalues)
    return Phase(parvalues)


def build_phases(definitions):
    """Build a `PhaseList` from a sequence of parameter dictionaries."""
    return PhaseList(phase_from_parameters(parvalues) for parvalues in definitions)
