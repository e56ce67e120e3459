#!/usr/bin/env python3
"""
Tests for the dose calculation session: triggers, resets, regimen switches
"""

import json
import os
import sys
from datetime import date

import pytest

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dose_engine.config import EngineConfig
from dose_engine.error_codes import DoseEngineError, ErrorCode
from dose_engine.limits import DoseLimitAdvisor, SafetyEngine
from dose_engine.merger import RecalculationMerger
from dose_engine.schema import DrugDefinition, Regimen
from services.dose_session import DoseCalculationSession, create_dose_session
from services.draft_store import DraftPersistenceGateway, InMemoryDraftStore


def cisplatin_etoposide():
    return Regimen(
        id="00280a",
        name="Cisplatin + Etoposide",
        schedule="Day 1-3 every 21 days",
        cycles=4,
        drugs=[
            DrugDefinition(name="Cisplatin", dosage="75", unit="mg/m²", drug_class="chemotherapy",
                           administration_duration="1-2 hours", available_solvents=["Normal Saline 0.9%"]),
            DrugDefinition(name="Etoposide", dosage="100", unit="mg/m²", drug_class="chemotherapy",
                           administration_duration="60 min", available_solvents=["Normal Saline 0.9%"])
        ]
    )


def carboplatin_etoposide():
    return Regimen(
        id="00271a",
        name="Carboplatin + Etoposide",
        schedule="Day 1-3 every 21 days",
        drugs=[
            DrugDefinition(name="Carboplatin", dosage="AUC5", unit="AUC", drug_class="chemotherapy"),
            DrugDefinition(name="Etoposide", dosage="100", unit="mg/m²", drug_class="chemotherapy")
        ]
    )


class CountingMerger(RecalculationMerger):
    def __init__(self):
        super().__init__()
        self.merge_count = 0

    def merge(self, regimen, patient, previous):
        self.merge_count += 1
        return super().merge(regimen, patient, previous)


class RecordingSafetyEngine(SafetyEngine):
    def __init__(self):
        self.calls = []

    def perform_comprehensive_safety_check(self, regimen, patient, calculated_doses,
                                           biomarker_status, current_medications):
        self.calls.append((dict(calculated_doses), dict(biomarker_status), list(current_medications)))
        if "Warfarin" in current_medications:
            return [{'type': 'interaction', 'message': 'Warfarin interaction'}]
        return []


class ExplodingSafetyEngine(SafetyEngine):
    def perform_comprehensive_safety_check(self, *args):
        raise RuntimeError("safety service down")


class TestDoseCalculationSession:

    @pytest.fixture(autouse=True)
    def build_session(self, timer_factory):
        self.timers = timer_factory
        self.store = InMemoryDraftStore()
        self.merger = CountingMerger()
        self.safety = RecordingSafetyEngine()
        self.session = DoseCalculationSession(
            merger=self.merger,
            gateway=DraftPersistenceGateway(self.store, timer_factory=timer_factory),
            safety_engine=self.safety
        )
        self.session.update_patient(bsa=1.8, weight=70, height=170, age=60, sex="M", creatinine_clearance=50)

    def test_load_regimen_calculates(self):
        states = self.session.load_regimen(cisplatin_etoposide())

        assert [s.name for s in states] == ["Cisplatin", "Etoposide"]
        assert states[0].calculated_dose == pytest.approx(101.25)
        assert states[0].final_dose == 101.3
        assert self.safety.calls[-1][0]['Etoposide'] == pytest.approx(180.0)

    def test_non_trigger_change_does_not_recalculate(self):
        self.session.load_regimen(cisplatin_etoposide())
        count = self.merger.merge_count

        self.session.update_patient(height=175, sex="F")
        assert self.merger.merge_count == count

        self.session.update_patient(weight=72)
        assert self.merger.merge_count == count + 1

    def test_trigger_change_preserves_edits(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_adjusted_dose("Etoposide", "150")
        self.session.set_notes("Etoposide", "reduced")

        states = self.session.update_patient(bsa=2.0)
        etoposide = states[1]

        assert etoposide.calculated_dose == pytest.approx(200.0)
        assert etoposide.adjusted_dose == 150.0
        assert etoposide.notes == "reduced"

    def test_bsa_cap_and_biomarkers_trigger(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.update_patient(bsa=2.4)
        count = self.merger.merge_count

        states = self.session.set_bsa_cap(True, 2.0)
        assert states[1].calculated_dose == pytest.approx(200.0)

        self.session.set_biomarker_status({'EGFR': 'wild-type'})
        assert self.merger.merge_count == count + 2

        self.session.set_biomarker_status({'EGFR': 'wild-type'})
        assert self.merger.merge_count == count + 2

    def test_hard_reset_on_missing_bsa(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_current_medications(["Warfarin"])
        assert self.session.safety_alerts

        assert self.session.update_patient(bsa=0) == []
        assert len(self.session.worksheet) == 0
        assert self.session.safety_alerts == []

    def test_hard_reset_on_no_regimen(self):
        self.session.load_regimen(cisplatin_etoposide())
        assert self.session.load_regimen(None) == []
        assert self.session.regimen is None

    def test_medications_rerun_safety_only(self):
        self.session.load_regimen(cisplatin_etoposide())
        count = self.merger.merge_count

        self.session.set_current_medications(["Warfarin"])

        assert self.merger.merge_count == count
        assert self.session.safety_alerts == [{'type': 'interaction', 'message': 'Warfarin interaction'}]

    def test_failing_safety_engine_is_not_fatal(self):
        self.session.safety_engine = ExplodingSafetyEngine()
        states = self.session.load_regimen(cisplatin_etoposide())

        assert len(states) == 2
        assert self.session.safety_alerts == []

    def test_regimen_switch_clears_identifier(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.update_details(patient_identifier="190-01-01 123456", full_name="Ana Pop")
        assert self.session.details.patient_identifier == "1900101123456"

        self.session.load_regimen(carboplatin_etoposide())

        assert self.session.details.patient_identifier == ""
        assert [s.name for s in self.session.worksheet] == ["Carboplatin", "Etoposide"]

    def test_regimen_switch_does_not_leak_edits(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_adjusted_dose("Etoposide", 90)

        states = self.session.load_regimen(carboplatin_etoposide())
        assert states[1].adjusted_dose == pytest.approx(180.0)

    def test_draft_restored_when_returning_to_regimen(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_adjusted_dose("Cisplatin", 95)
        self.session.toggle_selected("Etoposide", False)
        self.session.update_details(full_name="Ana Pop", patient_identifier="1900101123456",
                                    treatment_date=date(2024, 4, 2))

        self.session.load_regimen(carboplatin_etoposide())
        self.session.update_details(full_name="Someone Else")
        states = self.session.load_regimen(cisplatin_etoposide())

        assert states[0].adjusted_dose == 95.0
        assert states[0].final_dose == 95.0
        assert states[1].selected is False
        assert self.session.details.full_name == "Ana Pop"
        assert self.session.details.treatment_date == date(2024, 4, 2)
        assert self.session.details.patient_identifier == ""

    def test_persisted_drafts_never_hold_identifier(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.update_details(patient_identifier="1900101123456")
        self.session.flush()

        raw = self.store.get("draft:doseCalc:00280a")
        assert "1900101123456" not in raw
        assert 'patient_identifier' not in json.loads(raw)['patient']

    def test_edits_schedule_debounced_write(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_notes("Cisplatin", "hydrate")

        live = self.timers.live()
        assert len(live) == 1
        live[0].fire()

        stored = json.loads(self.store.get("draft:doseCalc:00280a"))
        assert stored['calculations'][0]['notes'] == "hydrate"

    def test_malformed_drafts_do_not_break_regimen_switch(self):
        for payload in ({'schema_version': 2, 'patient': "x", 'calculations': []},
                        {'calculations': [], 'selectedPremedications': 5},
                        {'schema_version': 2, 'calculations': None}):
            self.session.load_regimen(None)
            self.store.set("draft:doseCalc:00280a", json.dumps(payload))

            states = self.session.load_regimen(cisplatin_etoposide())

            assert [s.name for s in states] == ["Cisplatin", "Etoposide"]
            assert self.session.details.selected_premedications == []

    def test_legacy_numeric_duration_exports(self):
        self.store.set("draft:doseCalc:00280a", json.dumps({'calculations': [{
            'drug': {'name': 'Cisplatin', 'dosage': '75', 'unit': 'mg/m²', 'drugClass': 'chemotherapy'},
            'calculatedDose': 101.25,
            'adjustedDose': 100,
            'administrationDuration': 90,
            'solvent': 0
        }]}))

        self.session.load_regimen(cisplatin_etoposide())
        data = self.session.treatment_data()

        assert data.calculated_drugs[0].administration_duration == "90"
        assert data.calculated_drugs[0].final_dose == "100.0 mg"

    def test_string_false_deselects(self):
        self.session.load_regimen(cisplatin_etoposide())
        state = self.session.toggle_selected("Etoposide", "false")

        assert state.selected is False
        assert [d.name for d in self.session.treatment_data().calculated_drugs] == ["Cisplatin"]

    def test_cumulative_doses_follow_cycle_number(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_adjusted_dose("Cisplatin", 100)
        self.session.update_details(cycle_number="3")

        doses = {entry.drug_name: entry for entry in self.session.cumulative_doses()}
        assert doses["Cisplatin"].cumulative_dose == pytest.approx(300.0)
        assert doses["Cisplatin"].cycles_completed == 3
        assert doses["Cisplatin"].is_exceeded is False

        assert self.session.cumulative_doses(2)[0].cumulative_dose == pytest.approx(200.0)

    def test_unknown_patient_field_rejected(self):
        with pytest.raises(DoseEngineError) as exc_info:
            self.session.update_patient(shoe_size=44)
        assert exc_info.value.error_code == ErrorCode.APP_INVALID_REQUEST

    def test_unknown_detail_field_rejected(self):
        with pytest.raises(DoseEngineError):
            self.session.update_details(favourite_colour="blue")

    def test_treatment_data_requires_regimen(self):
        with pytest.raises(DoseEngineError) as exc_info:
            self.session.treatment_data()
        assert exc_info.value.error_code == ErrorCode.DOSE_NO_REGIMEN

    def test_treatment_data_and_blockers(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_adjusted_dose("Cisplatin", "0")
        self.session.update_details(patient_identifier="1900101123456", cycle_number="2",
                                    treatment_date=date(2024, 1, 1))

        assert self.session.export_blockers() == ["Cisplatin"]

        data = self.session.treatment_data()
        assert data.patient.patient_id == "1900101123456"
        assert data.patient.next_cycle_date == date(2024, 1, 22)
        assert [d.final_dose for d in data.calculated_drugs] == ["0.0 mg", "180.0 mg"]

    def test_snapshot_exposes_both_reduction_values(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.set_reduction_percentage("Etoposide", 10)
        self.session.set_adjusted_dose("Etoposide", 90)

        entry = self.session.snapshot()['calculations'][1]
        assert entry['reduction_percentage'] == 10.0
        assert entry['total_reduction_percent'] == 50

    def test_snapshot_flags_incomplete_details(self):
        self.session.load_regimen(cisplatin_etoposide())
        self.session.update_details(patient_identifier="123", cycle_number="5")

        details = self.session.snapshot()['details']
        assert details['identifier_complete'] is False
        assert details['cycle_number_valid'] is False

        self.session.update_details(patient_identifier="1900101123456", cycle_number="4")
        details = self.session.snapshot()['details']
        assert details['identifier_complete'] is True
        assert details['cycle_number_valid'] is True


class TestCreateDoseSession:

    def test_factory_uses_configuration(self):
        config = EngineConfig(default_bsa_cap=1.9)
        session = create_dose_session(config, store=InMemoryDraftStore(), advisor=DoseLimitAdvisor())

        assert session.patient.bsa_cap == 1.9
        assert session.gateway.key_prefix == "draft:doseCalc:"
        assert session.assembler.allowed_solvents == config.allowed_solvents
