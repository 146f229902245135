"""Phenological development through an ordered list of phases.

This module implements:
- Phenology: the phase state machine. It advances the current phase with the daily
  thermal time, cascades leftover thermal time through several phases in one day,
  rewinds or jumps to other phases and keeps the ledger of accumulated thermal time.
"""

import functools
import logging
import math
import re
import torch
from pcse.base import ParamTemplate
from pcse.traitlets import Bool
from pcse.traitlets import HasTraits
from pcse.traitlets import Instance
from pydispatch import dispatcher
from traitlets_pcse import Int
from traitlets_pcse import Unicode
from diffphenology.physical_models import signals
from diffphenology.physical_models.base import TensorContainer
from diffphenology.physical_models.config import ComputeConfig
from diffphenology.physical_models.crop.phases import PhaseList
from diffphenology.physical_models.exceptions import PhaseNotFoundError
from diffphenology.physical_models.exceptions import PhenologyError
from diffphenology.physical_models.traitlets import Tensor

# Phases before this index precede emergence and never hold emerged thermal time.
FIRST_EMERGED_PHASE_INDEX = 2

_BRACKETED_VALUE = re.compile(r"^(?P<name>[^(]*)\((?P<value>[^)]*)\)\s*$")


def mutates_state(method):
    """Run a mutating engine operation as one transaction.

    Nested calls are refused. When the operation fails, all counters and phase states
    are restored and the queued signals are dropped; otherwise the queued signals are
    sent once the operation has completed.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._busy:
            msg = f"Cannot call {method.__name__} while {self} is processing another operation"
            raise PhenologyError(msg)
        self._busy = True
        checkpoint = self._checkpoint()
        try:
            try:
                result = method(self, *args, **kwargs)
            except Exception:
                self._rollback(checkpoint)
                self._pending_signals.clear()
                raise
            self._flush_signals()
        finally:
            self._pending_signals.clear()
            self._busy = False
        return result

    return wrapper


def split_off_bracketed_value(text):
    """Split a stage name like "Flowering(0.5)" into ("Flowering", 0.5).

    Names without a bracketed suffix return a fraction of 0.
    """
    match = _BRACKETED_VALUE.match(text)
    if match is None:
        return text.strip(), 0.0
    value = match.group("value").strip()
    return match.group("name").strip(), float(value) if value else 0.0


class Phenology(HasTraits):
    """Implements the phase based phenological development of a crop.

    Development runs through an ordered list of phases, each bound by a start and an
    end stage. The development stage is a continuous number: `STAGE = index + 1 +
    fraction complete of the current phase`, so it equals 1 at the start of the first
    phase.

    Every simulated day the host calls `day_start` and then `advance_day` with the
    thermal time of the day. The current phase consumes the thermal time; once its
    target is exceeded the part it did not need cascades into the next phases within
    the same day. Running out of phases during a cascade is an error.

    Besides daily development the engine can be moved explicitly: `reset_to_stage`
    (e.g. after cutting or grazing), `set_current_phase_by_name` and `harvest`. Moving
    backwards, jumping more than one phase ahead or entering a `GotoPhase` is a
    rewind: the phases that are wound over are reset and, except for goto phases,
    their thermal time is removed from the accumulated totals.

    **Simulation parameters**

    | Name              | Description                                       | Type | Unit |
    |-------------------|---------------------------------------------------|------|------|
    | EMERGENCE_STAGE   | Stage at which the crop emerges                   | SCr  | -    |
    | GERMINATION_STAGE | Stage at which the crop germinates                | SCr  | -    |

    **State variables**

    | Name    | Description                                       | Pbl | Unit    |
    |---------|---------------------------------------------------|-----|---------|
    | STAGE   | Development stage (one based)                     | Y   | -       |
    | TTSUM   | Thermal time accumulated since sowing             | Y   | |C| day |
    | TTSUMEM | Thermal time accumulated since emergence          | Y   | |C| day |

    **Signals sent or handled**

    `Phenology` sends `phase_changed`, `phase_rewound`, `growth_stage_reached` and
    `post_phenology_completed` (see `diffphenology.physical_models.signals`). Signals
    are sent after the operation that caused them has updated all counters.

    **Gradient mapping (which parameters have a gradient):**

    | Output  | Parameters influencing it |
    |---------|---------------------------|
    | STAGE   | TTTARGET, thermal time    |
    | TTSUM   | thermal time              |
    """

    class Parameters(ParamTemplate):
        EMERGENCE_STAGE = Unicode()
        GERMINATION_STAGE = Unicode()

    class StateVariables(TensorContainer):
        STAGE = Tensor(1.0)
        TTSUM = Tensor(0.0)
        TTSUMEM = Tensor(0.0)

    default_parameters = {"EMERGENCE_STAGE": "Emergence", "GERMINATION_STAGE": "Germination"}

    phases = Instance(PhaseList)
    params = Instance(ParamTemplate)
    states = Instance(TensorContainer)

    current_phase_index = Int(0)
    emerged = Bool(False)
    germinated = Bool(False)
    alive = Bool(True)
    days_after_sowing = Int(0)

    def __init__(self, phases, parvalues=None, alive=True):
        """Create the engine for a list of phases.

        Args:
            phases (Iterable[Phase]): Phases in developmental order. The engine keeps
                its own `PhaseList`; a phase can only belong to one engine.
            parvalues (dict, optional): EMERGENCE_STAGE and GERMINATION_STAGE.
            alive (bool, optional): Whether the host entity is alive. Defaults to True.
        """
        HasTraits.__init__(self)
        self._busy = False
        self._pending_signals = []
        self._stages_crossed_today = []

        self.phases = PhaseList(phases)
        for phase in self.phases:
            phase.claim(self)
        self.params = self.Parameters({**self.default_parameters, **(parvalues or {})})
        self.states = self.StateVariables()
        self.alive = alive
        self._clear()
        self.logger.debug("Phenology initialized with %s", self.phases)

    @property
    def logger(self):
        loggername = f"{self.__class__.__module__}.{self.__class__.__name__}"
        return logging.getLogger(loggername)

    @property
    def device(self):
        """Get device from ComputeConfig."""
        return ComputeConfig.get_device()

    @property
    def dtype(self):
        """Get dtype from ComputeConfig."""
        return ComputeConfig.get_dtype()

    # Signals

    def connect(self, handler, signal, weak=True):
        """Call `handler` whenever this engine sends `signal`.

        Handlers receive the keyword arguments of the signal they declare, and may query
        the engine but not call its mutating operations.

        As with `pcse.base.SimulationObject._connect_signal`, the dispatcher only keeps a
        weak reference to `handler`: the caller has to keep the handler alive. With
        `weak=False` the dispatcher holds on to the handler, and to the engine when the
        handler refers to it, until `disconnect` is called.
        """
        dispatcher.connect(handler, signal=signal, sender=self, weak=weak)

    def disconnect(self, handler, signal, weak=True):
        dispatcher.disconnect(handler, signal=signal, sender=self, weak=weak)

    def _queue_signal(self, signal, **kwargs):
        self._pending_signals.append((signal, kwargs))

    def _flush_signals(self):
        while self._pending_signals:
            signal, kwargs = self._pending_signals.pop(0)
            self.logger.debug("Sent signal: %s", signal)
            dispatcher.send(signal, self, **kwargs)

    # Read surface

    @property
    def stage(self):
        return self.states.STAGE

    @property
    def accumulated_tt(self):
        return self.states.TTSUM

    @property
    def accumulated_emerged_tt(self):
        return self.states.TTSUMEM

    @property
    def current_phase(self):
        return self.phases[self.current_phase_index]

    @property
    def current_phase_name(self):
        return self.current_phase.name

    @property
    def current_stage_name(self):
        """Start stage of the current phase on the day it was entered, "?" otherwise."""
        if self.on_day_of(self.current_phase.start):
            return self.current_phase.start
        return "?"

    @property
    def fraction_in_current_phase(self):
        return self.stage - torch.floor(self.stage)

    @property
    def stages_crossed_today(self):
        return tuple(self._stages_crossed_today)

    @property
    def tt_in_above_ground_phases(self):
        """Thermal time of the phases following the one that ends at germination."""
        first = self.phases.index_of_end(self.params.GERMINATION_STAGE) + 1
        total = torch.zeros((), dtype=self.dtype, device=self.device)
        for phase in list(self.phases)[first:]:
            total = total + phase.tt_in_phase
        return total

    def index_of_phase(self, name):
        return self.phases.index_of_phase(name)

    def phase_starting_with(self, stage_name):
        return self.phases.phase_starting_with(stage_name)

    def on_day_of(self, stage_name):
        """True if `stage_name` was passed today."""
        return stage_name in self._stages_crossed_today

    def in_phase(self, phase_name):
        return self.current_phase_name.lower() == phase_name.lower()

    def between(self, start, end):
        """True if development is between the `start` and `end` stages.

        `start` may carry a fractional offset, e.g. "Flowering(0.5)": while the engine is
        in the phase starting at Flowering, the test then requires half of that phase
        to be completed.
        """
        start, start_fraction = split_off_bracketed_value(start)
        start_index = self.phases.index_of_start(start)
        end_index = self.phases.index_of_end(end)
        if start_index == -1:
            raise PhaseNotFoundError(f"Cannot find phase: {start}")
        if end_index == -1:
            raise PhaseNotFoundError(f"Cannot find phase: {end}")
        if start_index > end_index:
            raise PhenologyError(f"Start phase {start} is after phase {end}")

        if self.current_phase_index == start_index and start_fraction > 0:
            stage = float(self.stage)
            return stage >= math.trunc(stage) + start_fraction
        return start_index <= self.current_phase_index <= end_index

    def beyond(self, start):
        """True if development is at or past the phase starting with `start`.

        A fractional offset on `start` is accepted but not taken into account.
        """
        start, _ = split_off_bracketed_value(start)
        self.phases.phase_starting_with(start)
        return self.current_phase_index >= self.phases.index_of_start(start)

    # Host lifecycle

    @mutates_state
    def clear(self):
        """Reset all counters and phases to the state at sowing."""
        self._clear()

    @mutates_state
    def sow(self):
        self._clear()
        self.alive = True

    @mutates_state
    def end_crop(self):
        self._clear()
        self.alive = False

    @mutates_state
    def kill(self):
        self.alive = False

    @mutates_state
    def day_start(self):
        """Forget the stages passed yesterday."""
        self._stages_crossed_today.clear()
        if self.alive:
            self.days_after_sowing += 1

    @mutates_state
    def pruning(self):
        self.germinated = False
        self.emerged = False

    @mutates_state
    def harvest(self):
        """Jump to the last phase."""
        self._set_current_phase(self.phases.last_index)

    @mutates_state
    def set_current_phase_by_name(self, name):
        index = self.phases.index_of_phase(name)
        if index == -1:
            raise PhaseNotFoundError(f"Cannot jump to phenology phase: {name}. Phase not found.")
        self._set_current_phase(index)

    @mutates_state
    def reset_to_stage(self, new_stage):
        """Wind development back (or forward) to the continuous stage `new_stage`.

        Raises:
            ValueError: If `new_stage` is not positive, lies beyond the last phase, or puts
                a fraction in a phase without thermal time target.
        """
        new_stage = float(new_stage)
        if not new_stage > 0:
            raise ValueError(f"{self} must pass positive stage to set to, got {new_stage}")
        index = math.floor(new_stage) - 1
        if index > self.phases.last_index:
            msg = f"Stage {new_stage} is beyond the last of {len(self.phases)} phases"
            raise ValueError(msg)

        self._transition_to(index)
        self.current_phase.fraction_complete = new_stage - math.floor(new_stage)
        self._update_stage()
        self.logger.debug("Phenology rewound to stage %s", new_stage)
        self._queue_signal(signals.phase_rewound)

    @mutates_state
    def advance_day(self, driver):
        """Develop with the thermal time `driver` of one day.

        Args:
            driver (float | torch.Tensor): Thermal time of the day, must not be negative.

        Raises:
            PhenologyError: If the thermal time is negative, or if the cascade runs past
                the last phase.
        """
        if not self.alive:
            self.logger.debug("Entity not alive, phenology skipped")
            return

        driver = torch.as_tensor(driver, dtype=self.dtype, device=self.device)
        if driver.dim() != 0:
            raise ValueError(f"Thermal time must be a scalar, got shape {tuple(driver.shape)}")
        if torch.isnan(driver) or driver < 0:
            msg = f"Negative thermal time ({float(driver)}), check the thermal time source"
            raise PhenologyError(msg)

        leftover = self.current_phase.advance(1.0, driver)
        if leftover > 0:
            transitions = 0
            while leftover > 0:
                if self.current_phase_index + 1 >= len(self.phases):
                    raise PhenologyError(
                        "Cannot transition to the next phase. No more phases exist"
                    )
                # One transition per phase at most; more means a goto loop within the day.
                transitions += 1
                if transitions > len(self.phases):
                    raise PhenologyError(
                        f"More than {len(self.phases)} stages passed in one day, "
                        "check the goto phases for a loop"
                    )
                if self.stage >= 1:
                    self.germinated = True

                previous = self.current_phase
                self._transition_to(self.current_phase_index + 1)
                if previous.end.lower() == self.params.EMERGENCE_STAGE.lower():
                    self.emerged = True
                self._queue_signal(signals.growth_stage_reached)

                leftover = self.current_phase.advance(leftover, driver)
                self._update_stage()
        else:
            self._update_stage()

        self.states.TTSUM = self.states.TTSUM + driver
        if self.emerged:
            self.states.TTSUMEM = self.states.TTSUMEM + driver

        self.logger.debug(
            "Finished phenology step: stage %.4f in phase %s",
            float(self.stage),
            self.current_phase_name,
        )
        if self.alive:
            self._queue_signal(signals.post_phenology_completed)

    # Transitions

    def _set_current_phase(self, index):
        self._transition_to(index)
        self.logger.info("%s has set phase to %s", self, self.current_phase_name)

    def _transition_to(self, target_index):
        """Make phase `target_index` the current phase."""
        old_phase = self.current_phase
        prior_index = self.current_phase_index
        if not 0 <= target_index <= self.phases.last_index:
            raise PhaseNotFoundError(f"Cannot jump to phenology phase with index {target_index}")
        target = self.phases[target_index]

        # Entering the last phase comes from harvesting and is never wound back over.
        harvest_call = target_index == self.phases.last_index
        self._stages_crossed_today.append(target.start)

        is_rewind = (
            (target_index <= prior_index and not harvest_call)
            or target_index - prior_index > 1
            or target.is_redirect
        )
        if is_rewind:
            self._rewind_from(target_index, unwind=not target.is_redirect)
            if target.is_redirect:
                target_index = self.phases.index_of_phase(target.phase_name_to_goto)
                if target_index == -1:
                    raise PhaseNotFoundError(
                        f"Cannot goto phase: {target.phase_name_to_goto}. Phase not found."
                    )

        self.current_phase_index = target_index
        self.current_phase.reset()
        self._update_stage()
        msg = "Phase changed from %s to %s at stage %s"
        self.logger.debug(msg, old_phase.name, self.current_phase_name, old_phase.end)
        self._queue_signal(
            signals.phase_changed,
            old_phase_name=old_phase.name,
            new_phase_name=self.current_phase_name,
            event_stage_name=old_phase.end,
        )

    def _rewind_from(self, target_index, unwind=True):
        """Reset all phases from `target_index` on, removing their thermal time if `unwind`."""
        s = self.states
        for index, phase in enumerate(self.phases):
            if index < target_index:
                continue
            if unwind:
                s.TTSUM = s.TTSUM - phase.tt_in_phase
                if index >= FIRST_EMERGED_PHASE_INDEX:
                    s.TTSUMEM = s.TTSUMEM - phase.tt_in_phase
            phase.reset()

    def _update_stage(self):
        self.states.STAGE = (self.current_phase_index + 1) + self.current_phase.fraction_complete

    # State bookkeeping

    def _clear(self):
        self.days_after_sowing = 0
        self.states.update(
            STAGE=torch.ones((), dtype=self.dtype, device=self.device),
            TTSUM=torch.zeros((), dtype=self.dtype, device=self.device),
            TTSUMEM=torch.zeros((), dtype=self.dtype, device=self.device),
        )
        self.emerged = False
        self.germinated = False
        self._stages_crossed_today.clear()
        self.current_phase_index = 0
        for phase in self.phases:
            phase.reset()

    def _checkpoint(self):
        return {
            "states": self.states.as_dict(),
            "phases": [phase.get_state() for phase in self.phases],
            "current_phase_index": self.current_phase_index,
            "emerged": self.emerged,
            "germinated": self.germinated,
            "alive": self.alive,
            "days_after_sowing": self.days_after_sowing,
            "stages_crossed_today": list(self._stages_crossed_today),
        }

    def _rollback(self, checkpoint):
        self.states.update(**checkpoint["states"])
        for phase, state in zip(self.phases, checkpoint["phases"], strict=True):
            phase.set_state(state)
        self.current_phase_index = checkpoint["current_phase_index"]
        self.emerged = checkpoint["emerged"]
        self.germinated = checkpoint["germinated"]
        self.alive = checkpoint["alive"]
        self.days_after_sowing = checkpoint["days_after_sowing"]
        self._stages_crossed_today = checkpoint["stages_crossed_today"]

    def __repr__(self):
        return f"Phenology(stage={float(self.stage):.4f}, phase={self.current_phase_name})"
