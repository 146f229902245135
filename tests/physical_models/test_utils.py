"""Tests for the utils module, used to drive the phenology model from YAML files."""

import pytest
import torch
from diffphenology.physical_models.crop.phases import GotoPhase
from diffphenology.physical_models.crop.phases import PhaseList
from diffphenology.physical_models.crop.phenology import Phenology
from diffphenology.physical_models.utils import OUTPUT_VARS
from diffphenology.physical_models.utils import get_test_data
from diffphenology.physical_models.utils import phenology_from_test_data
from diffphenology.physical_models.utils import prepare_phenology_input
from diffphenology.physical_models.utils import run_phenology
from . import phy_data_folder


class TestGetTestData:
    def test_yaml_sections_are_loaded(self):
        test_data = get_test_data(phy_data_folder / "test_phenology_phases_01.yaml")
        for section in ["Phases", "ModelParameters", "ThermalTime", "ModelResults"]:
            assert section in test_data
        assert len(test_data["ThermalTime"]) == len(test_data["ModelResults"])

    def test_event_days_are_integers(self):
        test_data = get_test_data(phy_data_folder / "test_phenology_phases_02.yaml")
        assert list(test_data["Events"]) == [5]


class TestPrepareInput:
    def test_phases_parameters_and_thermal_time_are_split(self):
        test_data = get_test_data(phy_data_folder / "test_phenology_phases_02.yaml")
        phases, parvalues, thermal_time = prepare_phenology_input(test_data)

        assert isinstance(phases, PhaseList)
        assert phases.names[0] == "Germinating"
        assert isinstance(phases[4], GotoPhase)
        assert parvalues == {}
        assert thermal_time.dtype == torch.float64
        assert thermal_time.shape == (6,)

    def test_thermal_time_follows_device(self, device):
        test_data = get_test_data(phy_data_folder / "test_phenology_phases_01.yaml")
        _, _, thermal_time = prepare_phenology_input(test_data)
        assert thermal_time.device.type == device


class TestRunPhenology:
    @pytest.fixture
    def model(self):
        test_data = get_test_data(phy_data_folder / "test_phenology_phases_01.yaml")
        model, _ = phenology_from_test_data(test_data)
        return model

    def test_one_record_per_day(self, model):
        output = run_phenology(model, [5.0, 5.0, 5.0])
        assert [record["day"] for record in output] == [1, 2, 3]
        for record in output:
            assert set(OUTPUT_VARS) <= set(record)
            assert "PHASE" in record
            assert "CROSSED" in record

    def test_records_are_not_overwritten_by_later_days(self, model):
        output = run_phenology(model, [5.0, 5.0])
        assert float(output[0]["TTSUM"]) == pytest.approx(5.0)
        assert float(output[1]["TTSUM"]) == pytest.approx(10.0)

    def test_events_are_applied_after_the_daily_step(self, model):
        output = run_phenology(model, [5.0, 5.0], events={2: [["harvest"]]})
        assert output[0]["PHASE"] == "Germinating"
        assert output[1]["PHASE"] == "Ripening"
        assert output[1]["CROSSED"] == ["Maturity"]

    def test_phenology_from_test_data_uses_model_parameters(self):
        test_data = get_test_data(phy_data_folder / "test_phenology_phases_01.yaml")
        test_data["ModelParameters"] = {"EMERGENCE_STAGE": "Flowering"}
        model, thermal_time = phenology_from_test_data(test_data)
        assert isinstance(model, Phenology)
        assert model.params.EMERGENCE_STAGE == "Flowering"
        assert model.params.GERMINATION_STAGE == "Germination"
        assert len(thermal_time) == 7
