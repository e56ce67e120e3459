#!/usr/bin/env python3
"""
Unit tests for state-preserving recalculation and dose-limit advice
"""

import os
import sys

import pytest

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dose_engine.config import resolve_config_path
from dose_engine.limits import DoseLimitAdvisor, TableDoseLimitAdvisor
from dose_engine.merger import RecalculationMerger
from dose_engine.schema import DoseAlert, DrugDefinition, PatientParameters, Regimen
from dose_engine.state import DoseWorksheet


def carbo_paclitaxel():
    return Regimen(
        id="carbo-pacli",
        name="Carboplatin + Paclitaxel",
        schedule="Every 21 days",
        drugs=[
            DrugDefinition(name="Carboplatin", dosage="AUC5", unit="AUC", drug_class="chemotherapy",
                           administration_duration="30 min", available_solvents=["Dextrose 5%"],
                           available_volumes=[250, 500]),
            DrugDefinition(name="Paclitaxel", dosage="175", unit="mg/m²", drug_class="chemotherapy",
                           administration_duration="3 hours", available_solvents=["Normal Saline 0.9%", "Dextrose 5%"],
                           available_volumes=[500])
        ]
    )


class ThresholdAdvisor(DoseLimitAdvisor):
    """Flags any dose above a fixed threshold"""

    def __init__(self, threshold):
        self.threshold = threshold
        self.calls = []

    def check(self, drug_name, dose, schedule=None):
        self.calls.append((drug_name, dose, schedule))
        if dose > self.threshold:
            return DoseAlert(is_exceeded=True, warning=f"{drug_name} above {self.threshold}",
                             suggested_action="Review")
        return DoseAlert(is_exceeded=False)


class BrokenAdvisor(DoseLimitAdvisor):
    def check(self, drug_name, dose, schedule=None):
        raise RuntimeError("limits service unavailable")


class TestRecalculationMerger:

    def setup_method(self):
        self.merger = RecalculationMerger()
        self.regimen = carbo_paclitaxel()
        self.patient = PatientParameters(bsa=1.8, weight=70, age=60, creatinine_clearance=80)

    def test_new_states_take_drug_defaults(self):
        states = self.merger.merge(self.regimen, self.patient, [])

        assert [s.name for s in states] == ["Carboplatin", "Paclitaxel"]
        paclitaxel = states[1]
        assert paclitaxel.calculated_dose == pytest.approx(315.0)
        assert paclitaxel.adjusted_dose == paclitaxel.calculated_dose
        assert paclitaxel.final_dose == 315.0
        assert paclitaxel.selected is True
        assert paclitaxel.reduction_percentage == 0
        assert paclitaxel.administration_duration == "3 hours"
        assert paclitaxel.solvent == "Normal Saline 0.9%"
        assert paclitaxel.selected_solvent_type == "Normal Saline 0.9%"
        assert paclitaxel.selected_volume == 500
        assert paclitaxel.dose_alert is None

    def test_edits_survive_weight_change(self):
        worksheet = DoseWorksheet(self.merger.merge(self.regimen, self.patient, []), self.regimen.id)
        worksheet.set_adjusted_dose("Paclitaxel", "250")
        worksheet.set_notes("Paclitaxel", "abc")
        worksheet.toggle_selected("Paclitaxel", False)
        worksheet.set_volume("Paclitaxel", 250)

        heavier = PatientParameters(bsa=1.9, weight=80, age=60, creatinine_clearance=80)
        states = self.merger.merge(self.regimen, heavier, worksheet.states)
        paclitaxel = states[1]

        assert paclitaxel.calculated_dose == pytest.approx(332.5)
        assert paclitaxel.adjusted_dose == 250.0
        assert paclitaxel.final_dose == 250.0
        assert paclitaxel.notes == "abc"
        assert paclitaxel.selected is False
        assert paclitaxel.selected_volume == 250.0
        assert paclitaxel.last_edit is not None

    def test_recalculation_is_idempotent(self):
        first = self.merger.merge(self.regimen, self.patient, [])
        second = self.merger.merge(self.regimen, self.patient, first)
        third = self.merger.merge(self.regimen, self.patient, second)

        assert [s.to_dict() for s in second] == [s.to_dict() for s in third]
        assert [s.to_dict() for s in first] == [s.to_dict() for s in second]

    def test_drugs_leaving_the_regimen_are_dropped(self):
        previous = self.merger.merge(self.regimen, self.patient, [])
        previous[0].notes = "keep me"

        carboplatin_only = Regimen(id="carbo", name="Carboplatin", schedule="Every 21 days",
                                   drugs=[self.regimen.drugs[0]])
        states = self.merger.merge(carboplatin_only, self.patient, previous)

        assert [s.name for s in states] == ["Carboplatin"]
        assert states[0].notes == "keep me"

    def test_regimen_order_drives_output(self):
        previous = self.merger.merge(self.regimen, self.patient, [])
        reversed_regimen = Regimen(id="pacli-carbo", name="Reversed", drugs=list(reversed(self.regimen.drugs)))

        states = self.merger.merge(reversed_regimen, self.patient, previous)
        assert [s.name for s in states] == ["Paclitaxel", "Carboplatin"]

    def test_missing_duration_falls_back_to_drug_default(self):
        previous = self.merger.merge(self.regimen, self.patient, [])
        previous[1].administration_duration = None

        states = self.merger.merge(self.regimen, self.patient, previous)
        assert states[1].administration_duration == "3 hours"

    def test_failing_drug_does_not_abort_batch(self):
        broken = DrugDefinition.model_construct(name="Broken", dosage=None, unit="")
        regimen = Regimen(id="mixed", name="Mixed", drugs=[self.regimen.drugs[1], broken])

        states = self.merger.merge(regimen, self.patient, [])

        assert states[0].calculated_dose == pytest.approx(315.0)
        assert states[1].name == "Broken"
        assert states[1].calculated_dose == 0.0
        assert states[1].final_dose == 0.0
        assert states[1].dose_alert is None


class TestAlertPrecedence:

    def setup_method(self):
        self.regimen = carbo_paclitaxel()
        self.small = PatientParameters(bsa=1.6, weight=60, age=60, creatinine_clearance=80)
        self.large = PatientParameters(bsa=2.2, weight=95, age=60, creatinine_clearance=80)

    def test_emerging_alert_is_adopted(self):
        merger = RecalculationMerger(advisor=ThresholdAdvisor(threshold=350))
        states = merger.merge(self.regimen, self.small, [])
        assert states[1].dose_alert is None

        states = merger.merge(self.regimen, self.large, states)
        assert states[1].dose_alert is not None
        assert states[1].dose_alert.is_exceeded is True

    def test_existing_alert_wins(self):
        merger = RecalculationMerger(advisor=ThresholdAdvisor(threshold=350))
        states = merger.merge(self.regimen, self.large, [])
        raised = states[1].dose_alert

        states = merger.merge(self.regimen, self.small, states)
        assert states[1].dose_alert is raised

    def test_advisor_receives_adjusted_dose_and_schedule(self):
        advisor = ThresholdAdvisor(threshold=10000)
        merger = RecalculationMerger(advisor=advisor)
        merger.merge(self.regimen, PatientParameters(bsa=1.8, weight=70, age=80, creatinine_clearance=80), [])

        name, dose, schedule = advisor.calls[1]
        assert name == "Paclitaxel"
        assert dose == pytest.approx(315.0 * 0.9)
        assert schedule == "Every 21 days"

    def test_failing_advisor_means_no_alert(self):
        merger = RecalculationMerger(advisor=BrokenAdvisor())
        states = merger.merge(self.regimen, self.large, [])

        assert states[1].calculated_dose == pytest.approx(385.0)
        assert states[1].dose_alert is None


class TestTableDoseLimitAdvisor:

    def setup_method(self):
        self.advisor = TableDoseLimitAdvisor(limits={
            'Cisplatin': {'max_per_cycle': 200, 'unit': 'mg', 'warnings': 'Monitor renal function'},
            'Paclitaxel': {'max_per_cycle': {'weekly': 160, 'q3w': 350}, 'unit': 'mg'}
        })

    def test_scalar_limit(self):
        alert = self.advisor.check("Cisplatin", 210.0, "Every 21 days")
        assert alert.is_exceeded is True
        assert "200" in alert.warning
        assert alert.suggested_action == "Monitor renal function"

        assert self.advisor.check("Cisplatin", 150.0).is_exceeded is False

    def test_schedule_keyed_limit(self):
        assert self.advisor.check("Paclitaxel", 200.0, "Day 1 weekly").is_exceeded is True
        assert self.advisor.check("Paclitaxel", 200.0, "Every 21 days").is_exceeded is False

    def test_unknown_drug_not_exceeded(self):
        assert self.advisor.check("Etoposide", 5000.0).is_exceeded is False

    def test_default_limits_file(self):
        advisor = TableDoseLimitAdvisor(resolve_config_path(None, "drug_limits.yaml"))
        assert "Carboplatin" in advisor.limits
        assert advisor.check("Vincristine", 2.5).is_exceeded is True

    def test_missing_limits_file_disables_limits(self, tmp_path):
        advisor = TableDoseLimitAdvisor(tmp_path / "absent.yaml")
        assert advisor.limits == {}
        assert advisor.check("Cisplatin", 10000.0).is_exceeded is False


class TestPreparationAndCumulativeAdvice:

    def setup_method(self):
        self.advisor = TableDoseLimitAdvisor(limits={
            'Paclitaxel': {'max_per_cycle': 350, 'concentration': {'min_mg_per_ml': 0.3, 'max_mg_per_ml': 1.2}},
            'Oxaliplatin': {
                'max_per_cycle': 260,
                'max_cumulative': 850,
                'cumulative_unit': 'mg/m²',
                'concentration': {'min_volume_ml': 250},
                'solvent_restriction': 'Oxaliplatin: Dextrose 5% (D5W) only, for stability'
            },
            'Bleomycin': {'max_per_cycle': 30, 'max_cumulative': 400, 'cumulative_unit': 'units'}
        })
        self.merger = RecalculationMerger(advisor=self.advisor)
        self.patient = PatientParameters(bsa=1.8, weight=70, age=60, creatinine_clearance=80)

    def regimen(self, volume, solvents=("Normal Saline 0.9%",)):
        return Regimen(id="pacli", name="Paclitaxel", schedule="Every 21 days", drugs=[
            DrugDefinition(name="Paclitaxel", dosage="175", unit="mg/m²", drug_class="chemotherapy",
                           available_solvents=list(solvents), available_volumes=[volume])
        ])

    def test_concentration_alert_on_merge(self):
        # 315 mg in 250 mL is 1.26 mg/mL
        state = self.merger.merge(self.regimen(250), self.patient, [])[0]
        assert "exceeds the limit of 1.2 mg/mL" in state.preparation_alert

        state = self.merger.merge(self.regimen(500), self.patient, [])[0]
        assert state.preparation_alert is None

    def test_alert_follows_edits(self):
        worksheet = DoseWorksheet(self.merger.merge(self.regimen(500), self.patient, []), "pacli",
                                  preparation_check=self.merger.check_preparation)

        assert "below the minimum" in worksheet.set_adjusted_dose("Paclitaxel", 100).preparation_alert
        assert worksheet.set_volume("Paclitaxel", 250).preparation_alert is None
        assert "Solvent not compatible" in worksheet.set_solvent("Paclitaxel", "Ringer Solution").preparation_alert

    def test_alert_recomputed_after_recalculation(self):
        previous = self.merger.merge(self.regimen(500), self.patient, [])
        previous[0].selected_volume = 250.0

        state = self.merger.merge(self.regimen(500), self.patient, previous)[0]
        assert state.selected_volume == 250.0
        assert "exceeds the limit" in state.preparation_alert

    def test_oxaliplatin_volume_and_solvent(self):
        drug = DrugDefinition(name="Oxaliplatin", dosage="85", unit="mg/m²", available_solvents=["Dextrose 5%"])

        assert self.advisor.check_preparation(drug, 150.0, 200.0, "Dextrose 5%") == \
            "Minimum volume for Oxaliplatin is 250 mL"
        assert self.advisor.check_preparation(drug, 150.0, 250.0, "NS") == \
            "Oxaliplatin: Dextrose 5% (D5W) only, for stability"
        assert self.advisor.check_preparation(drug, 150.0, 250.0, "D5W") is None

    def test_failing_preparation_check_means_no_alert(self):
        class BrokenAdvisor(DoseLimitAdvisor):
            def check_preparation(self, *args):
                raise RuntimeError("rules unavailable")

        state = RecalculationMerger(advisor=BrokenAdvisor()).merge(self.regimen(250), self.patient, [])[0]
        assert state.preparation_alert is None

    def test_cumulative_per_m2_limit(self):
        within = self.advisor.check_cumulative("Oxaliplatin", 150.0, 10, bsa=1.8)
        assert within.cumulative_dose == pytest.approx(1500.0)
        assert within.limit == 850.0
        assert within.is_exceeded is False

        over = self.advisor.check_cumulative("Oxaliplatin", 150.0, 11, bsa=1.8)
        assert over.is_exceeded is True
        assert "lifetime limit of 850 mg/m²" in over.warning

    def test_cumulative_per_m2_limit_needs_bsa(self):
        result = self.advisor.check_cumulative("Oxaliplatin", 150.0, 20, bsa=0)
        assert result.limit is None
        assert result.is_exceeded is False

    def test_cumulative_absolute_limit(self):
        result = self.advisor.check_cumulative("Bleomycin", 30.0, 14)
        assert result.cumulative_dose == pytest.approx(420.0)
        assert result.is_exceeded is True
        assert result.unit == "units"

    def test_cumulative_without_limit(self):
        result = DoseLimitAdvisor().check_cumulative("Pembrolizumab", 200.0, 10)
        assert result.cumulative_dose == pytest.approx(2000.0)
        assert result.is_exceeded is False
        assert result.warning is None

    def test_shipped_limits_carry_preparation_rules(self):
        advisor = TableDoseLimitAdvisor(resolve_config_path(None, "drug_limits.yaml"))
        assert advisor.concentration_rule("Paclitaxel") == {'min_mg_per_ml': 0.3, 'max_mg_per_ml': 1.2}
        assert advisor.check_cumulative("Doxorubicin", 108.0, 10, bsa=1.8).is_exceeded is True
