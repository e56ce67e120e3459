#!/usr/bin/env python3
"""
Draft persistence for dose calculation sessions
Serializes, restores and migrates per-regimen drafts; the patient identifier
is never written.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import duckdb

from dose_engine.error_codes import ErrorCode
from dose_engine.formula import optional_text, parse_flag, parse_float
from dose_engine.schema import PatientParameters
from dose_engine.state import EditableDoseState

logger = logging.getLogger(__name__)

DRAFT_KEY_PREFIX = "draft:doseCalc:"
SCHEMA_VERSION = 2

# Every spelling of the patient identifier seen in stored drafts
IDENTIFIER_KEYS = frozenset({"patient_identifier", "patientIdentifier", "patient_id", "patientId", "cnp", "CNP"})

LEGACY_FIELD_MAP = {
    'fullName': 'full_name',
    'foNumber': 'observation_number',
    'observationNumber': 'observation_number',
    'cycleNumber': 'cycle_number',
    'treatmentDate': 'treatment_date',
    'administrationDate': 'treatment_date',
    'nextCycleDate': 'next_cycle_date',
    'clinicalNotes': 'clinical_notes',
    'bsaCapEnabled': 'use_bsa_cap',
    'useBsaCap': 'use_bsa_cap',
    'bsaCap': 'bsa_cap',
    'selectedPremedications': 'selected_premedications',
    'selectedAntiemetics': 'selected_antiemetics',
    'lastUpdated': 'last_updated'
}

TEXT_ENTRY_FIELDS = ('administration_duration', 'solvent', 'selected_solvent_type', 'preparation_alert')

LEGACY_ENTRY_MAP = {
    'calculatedDose': 'calculated_dose',
    'adjustedDose': 'adjusted_dose',
    'finalDose': 'final_dose',
    'reductionPercentage': 'reduction_percentage',
    'administrationDuration': 'administration_duration',
    'selectedSolventType': 'selected_solvent_type',
    'selectedVolume': 'selected_volume',
    'doseAlert': 'dose_alert',
    'concentrationAlert': 'preparation_alert'
}


class DraftStore:
    """Key-value port for draft storage. Values are JSON text."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class InMemoryDraftStore(DraftStore):
    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class DuckDBDraftStore(DraftStore):
    """Draft storage in a DuckDB table"""

    def __init__(self, db_path: str = "database/drafts.duckdb"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = duckdb.connect(str(db_path))
        self._lock = threading.Lock()
        self.init_schema()

    def init_schema(self):
        with self._lock:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS drafts (
                    key VARCHAR PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT payload FROM drafts WHERE key = ?", [key]).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO drafts (key, payload, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                [key, value]
            )

    def remove(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM drafts WHERE key = ?", [key])

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM drafts WHERE starts_with(key, ?) ORDER BY key", [prefix]
            ).fetchall()
        return [row[0] for row in rows]

    def close(self):
        with self._lock:
            self.conn.close()


@dataclass
class DraftDetails:
    """Form fields saved alongside the dose worksheet"""
    full_name: str = ""
    patient_identifier: str = ""  # in memory only
    observation_number: str = ""
    cycle_number: str = ""
    treatment_date: Optional[date] = None
    next_cycle_date: Optional[date] = None
    clinical_notes: str = ""
    selected_premedications: List[Dict[str, Any]] = field(default_factory=list)
    selected_antiemetics: List[Dict[str, Any]] = field(default_factory=list)

    def as_treatment_details(self) -> Dict[str, Any]:
        return {
            'patient_id': self.patient_identifier,
            'full_name': self.full_name,
            'observation_number': self.observation_number,
            'cycle_number': self.cycle_number,
            'treatment_date': self.treatment_date,
            'next_cycle_date': self.next_cycle_date,
            'clinical_notes': self.clinical_notes,
            'selected_premedications': self.selected_premedications,
            'selected_antiemetics': self.selected_antiemetics
        }


@dataclass
class RestoredDraft:
    details: DraftDetails
    states: List[EditableDoseState]
    use_bsa_cap: Optional[bool] = None
    bsa_cap: Optional[float] = None


class DraftWriteScheduler:
    """
    Debounces draft writes per storage key.

    The key and payload are fixed when a write is scheduled; a later write
    for the same key replaces it and restarts the delay.
    """

    def __init__(
        self,
        writer: Callable[[str, Dict[str, Any]], bool],
        delay_seconds: float = 0.5,
        timer_factory: Callable[..., Any] = threading.Timer
    ):
        self.writer = writer
        self.delay_seconds = delay_seconds
        self.timer_factory = timer_factory
        self._pending: Dict[str, Tuple[Any, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            previous = self._pending.pop(key, None)
            if previous is not None:
                previous[0].cancel()
            timer = self.timer_factory(self.delay_seconds, self._fire, args=(key, payload))
            timer.daemon = True
            self._pending[key] = (timer, payload)
        timer.start()

    def pending_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._pending)

    def _fire(self, key: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            entry = self._pending.get(key)
            # Stale timer for a replaced payload
            if entry is None or entry[1] is not payload:
                return
            del self._pending[key]
        self.writer(key, payload)

    def flush(self) -> None:
        """Run every pending write now"""
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for key, (timer, payload) in pending:
            timer.cancel()
            self.writer(key, payload)

    def cancel_all(self) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for timer, _ in pending:
            timer.cancel()


def redact_identifier(value: Any) -> Any:
    """Copy of a JSON-like value with every identifier key removed, at any depth"""
    if isinstance(value, dict):
        return {k: redact_identifier(v) for k, v in value.items() if k not in IDENTIFIER_KEYS}
    if isinstance(value, list):
        return [redact_identifier(v) for v in value]
    return value


def _text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _date_text(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class DraftPersistenceGateway:
    """Serializes and restores per-regimen drafts through a DraftStore"""

    def __init__(
        self,
        store: Optional[DraftStore] = None,
        key_prefix: str = DRAFT_KEY_PREFIX,
        debounce_seconds: float = 0.5,
        timer_factory: Callable[..., Any] = threading.Timer
    ):
        self.store = store or InMemoryDraftStore()
        self.key_prefix = key_prefix
        self.scheduler = DraftWriteScheduler(self._write_key, debounce_seconds, timer_factory)

    def key_for(self, regimen_id: str) -> str:
        return f"{self.key_prefix}{regimen_id}"

    def build_payload(
        self,
        regimen_id: str,
        details: DraftDetails,
        patient: PatientParameters,
        states: List[EditableDoseState]
    ) -> Dict[str, Any]:
        """Snapshot of the draft; the patient identifier is not part of it"""
        payload = {
            'schema_version': SCHEMA_VERSION,
            'regimen_id': regimen_id,
            'patient': {
                'full_name': details.full_name,
                'observation_number': details.observation_number
            },
            'cycle_number': details.cycle_number,
            'treatment_date': _date_text(details.treatment_date),
            'next_cycle_date': _date_text(details.next_cycle_date),
            'clinical_notes': details.clinical_notes,
            'use_bsa_cap': patient.use_bsa_cap,
            'bsa_cap': patient.bsa_cap,
            'selected_premedications': list(details.selected_premedications),
            'selected_antiemetics': list(details.selected_antiemetics),
            'calculations': [state.to_dict() for state in states],
            'last_updated': datetime.now(timezone.utc).isoformat()
        }
        return redact_identifier(payload)

    def schedule_write(
        self,
        regimen_id: str,
        details: DraftDetails,
        patient: PatientParameters,
        states: List[EditableDoseState]
    ) -> None:
        """Debounced write for the regimen id given now"""
        payload = self.build_payload(regimen_id, details, patient, states)
        self.scheduler.schedule(self.key_for(regimen_id), payload)

    def write_now(self, regimen_id: str, payload: Dict[str, Any]) -> bool:
        return self._write_key(self.key_for(regimen_id), payload)

    def _write_key(self, key: str, payload: Dict[str, Any]) -> bool:
        try:
            self.store.set(key, json.dumps(redact_identifier(payload)))
            return True
        except Exception as e:
            logger.warning(f"{ErrorCode.DRAFT_WRITE_FAILED.value}: failed to save draft {key}: {e}")
            return False

    def flush(self) -> None:
        self.scheduler.flush()

    def cancel_pending(self) -> None:
        self.scheduler.cancel_all()

    def _discard(self, key: str, reason: Any) -> None:
        logger.warning(f"{ErrorCode.DRAFT_CORRUPTED.value}: corrupted draft {key} removed: {reason}")
        try:
            self.store.remove(key)
        except Exception as e:
            logger.warning(f"Failed to remove corrupted draft {key}: {e}")

    def _load_raw(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning(f"Failed to read draft {key}: {e}")
            return None
        if raw is None:
            return None

        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as e:
            self._discard(key, e)
            return None

        if not isinstance(payload, dict):
            self._discard(key, f"unexpected shape {type(payload).__name__}")
            return None
        return payload

    def read(self, regimen_id: str) -> Optional[RestoredDraft]:
        """
        Load and sanitize the draft for a regimen.

        The sanitized form is written back immediately. The returned details
        always carry an empty identifier. A draft that cannot be restored is
        removed and reads as absent.
        """
        key = self.key_for(regimen_id)
        payload = self._load_raw(key)
        if payload is None:
            return None

        try:
            payload = self.sanitize(upgrade_payload(payload))
            restored = self._restore(payload)
        except Exception as e:
            self._discard(key, e)
            return None

        self._write_key(key, payload)
        logger.info(f"Restored draft for regimen {regimen_id} with {len(restored.states)} dose entries")
        return restored

    def _restore(self, payload: Dict[str, Any]) -> RestoredDraft:
        patient = payload['patient']
        details = DraftDetails(
            full_name=_text(patient.get('full_name')),
            patient_identifier="",
            observation_number=_text(patient.get('observation_number')),
            cycle_number=_text(payload.get('cycle_number')),
            treatment_date=_parse_date(payload.get('treatment_date')),
            next_cycle_date=_parse_date(payload.get('next_cycle_date')),
            clinical_notes=_text(payload.get('clinical_notes')),
            selected_premedications=payload['selected_premedications'],
            selected_antiemetics=payload['selected_antiemetics']
        )

        states = []
        for entry in payload['calculations']:
            state = EditableDoseState.from_dict(entry)
            if state is not None:
                states.append(state)

        use_bsa_cap = payload.get('use_bsa_cap')
        bsa_cap = payload.get('bsa_cap')
        return RestoredDraft(
            details=details,
            states=states,
            use_bsa_cap=parse_flag(use_bsa_cap) if use_bsa_cap is not None else None,
            bsa_cap=parse_float(bsa_cap) if bsa_cap is not None else None
        )

    def sanitize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Coerce a draft to the shapes the session reads.

        patient becomes a dict, the premedication and antiemetic selections
        lists of dicts, and each dose entry gets numeric doses, a boolean
        selection and text or None for its free-form fields.
        """
        payload = dict(payload)

        patient = payload.get('patient')
        payload['patient'] = dict(patient) if isinstance(patient, dict) else {}
        for key in ('selected_premedications', 'selected_antiemetics'):
            items = payload.get(key)
            payload[key] = [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

        entries = payload.get('calculations')
        if not isinstance(entries, list):
            entries = []

        sanitized = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            entry = dict(entry)
            for field_name in ('calculated_dose', 'adjusted_dose', 'final_dose', 'reduction_percentage'):
                entry[field_name] = parse_float(entry.get(field_name))
            entry['selected'] = parse_flag(entry.get('selected'), default=True)
            entry['notes'] = entry['notes'] if isinstance(entry.get('notes'), str) else ""
            for field_name in TEXT_ENTRY_FIELDS:
                entry[field_name] = optional_text(entry.get(field_name))
            volume = entry.get('selected_volume')
            entry['selected_volume'] = parse_float(volume) if volume is not None else None
            sanitized.append(entry)

        payload['calculations'] = sanitized
        return redact_identifier(payload)

    def migrate_all(self) -> int:
        """
        Normalize every stored draft in place.

        Each draft is upgraded, sanitized and stamped with the schema
        version. A draft that fails is removed without stopping the pass.
        Returns the number of drafts rewritten.
        """
        try:
            keys = self.store.keys(self.key_prefix)
        except Exception as e:
            logger.warning(f"Draft migration skipped, store unavailable: {e}")
            return 0

        migrated = 0
        for key in keys:
            payload = self._load_raw(key)
            if payload is None:
                continue

            try:
                payload = self.sanitize(upgrade_payload(payload))
            except Exception as e:
                self._discard(key, e)
                continue

            if self._write_key(key, payload):
                migrated += 1

        logger.info(f"Draft migration normalized {migrated} of {len(keys)} drafts")
        return migrated




def upgrade_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Bring a stored draft to the current schema; drafts without a version are legacy camelCase"""
    payload = redact_identifier(payload)
    version = payload.get('schema_version')
    if isinstance(version, int) and version >= SCHEMA_VERSION:
        return payload

    upgraded: Dict[str, Any] = {}
    for key, value in payload.items():
        upgraded[LEGACY_FIELD_MAP.get(key, key)] = value

    patient = upgraded.get('patient') or upgraded.pop('patientData', None)
    patient = dict(patient) if isinstance(patient, dict) else {}
    for key in ('full_name', 'observation_number'):
        if key in upgraded:
            patient.setdefault(key, upgraded.pop(key))
    for legacy, current in LEGACY_FIELD_MAP.items():
        if legacy in patient:
            patient.setdefault(current, patient.pop(legacy))
    upgraded['patient'] = patient

    entries = upgraded.get('calculations')
    if isinstance(entries, list):
        upgraded['calculations'] = [
            {LEGACY_ENTRY_MAP.get(k, k): v for k, v in entry.items()} if isinstance(entry, dict) else entry
            for entry in entries
        ]
    else:
        upgraded['calculations'] = []

    upgraded['schema_version'] = SCHEMA_VERSION
    return upgraded
