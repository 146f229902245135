"""Helpers to set up and run the phenology model, mainly for the YAML unit tests.

It contains:
    - get_test_data: read a YAML test file.
    - prepare_phenology_input: split the YAML content into phases, parameters and the
      daily thermal time.
    - run_phenology: drive a `Phenology` instance day by day, the way a host crop model
      does, and collect the daily output.
"""

import torch
import yaml
from diffphenology.physical_models.config import ComputeConfig
from diffphenology.physical_models.crop.phases import build_phases
from diffphenology.physical_models.crop.phenology import Phenology

OUTPUT_VARS = ["STAGE", "TTSUM", "TTSUMEM"]


def get_test_data(test_data_path):
    """Get the test data from the YAML file."""
    with open(test_data_path) as f:
        return yaml.safe_load(f)


def prepare_phenology_input(test_data):
    """Prepare the inputs for the phenology model from the YAML content.

    Returns:
        tuple: (phases, parvalues, thermal_time)
            phases (PhaseList): Phases built from the `Phases` section.
            parvalues (dict): Engine parameters from the `ModelParameters` section.
            thermal_time (torch.Tensor): Daily thermal time from `ThermalTime`.
    """
    phases = build_phases(test_data["Phases"])
    parvalues = dict(test_data.get("ModelParameters") or {})
    thermal_time = torch.tensor(
        test_data["ThermalTime"], dtype=ComputeConfig.get_dtype(), device=ComputeConfig.get_device()
    )
    return phases, parvalues, thermal_time


def run_phenology(model, thermal_time, events=None):
    """Run `model` for as many days as there are thermal time values.

    Args:
        model (Phenology): The engine to drive.
        thermal_time (Iterable): Daily thermal time, one value per day.
        events (dict, optional): Management events keyed by day number (starting at 1).
            Each value is a list of `[method_name, *args]` entries called on the engine
            after the daily step, e.g. `{5: [["reset_to_stage", 2.5]]}`.

    Returns:
        list[dict]: One record per day with the day number, the current phase, the
            stages passed that day and the OUTPUT_VARS.
    """
    events = events or {}
    output = []
    for day, driver in enumerate(thermal_time, start=1):
        model.day_start()
        model.advance_day(driver)
        for event in events.get(day, []):
            method_name, *args = event
            getattr(model, method_name)(*args)
        record = {var: getattr(model.states, var) for var in OUTPUT_VARS}
        record.update(
            day=day,
            PHASE=model.current_phase_name,
            CROSSED=list(model.stages_crossed_today),
        )
        output.append(record)
    return output


def phenology_from_test_data(test_data):
    """Create a `Phenology` instance and its daily thermal time from YAML content."""
    phases, parvalues, thermal_time = prepare_phenology_input(test_data)
    return Phenology(phases, parvalues), thermal_time
