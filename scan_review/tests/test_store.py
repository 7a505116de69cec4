"""
State Store Tests
=================
"""

from scan_review.db.models import StateEntry
from scan_review.db.session import get_db_session
from scan_review.schemas import AppState, CaseRecord, CaseStatus, Persona
from scan_review.store import StateStore


class TestStateStore:

    def test_load_empty_gives_fresh_state(self, store):
        state = store.load()

        assert state.case is None
        assert state.findings == []
        assert state.current_persona == Persona.PRIMARY

    def test_round_trip(self, store):
        state = AppState(
            case=CaseRecord(id="case-1", patient_ref="ANON-2025-1111", status=CaseStatus.REVIEWED),
            current_persona=Persona.PEER,
        )

        store.save(state)
        loaded = store.load()

        assert loaded.case.id == "case-1"
        assert loaded.case.status == CaseStatus.REVIEWED
        assert loaded.current_persona == Persona.PEER

    def test_save_replaces_and_bumps_revision(self, store):
        store.save(AppState(current_persona=Persona.PEER))
        store.save(AppState(current_persona=Persona.PATIENT))

        with get_db_session(store.database_url) as db:
            entry = db.get(StateEntry, store.namespace)
            assert entry.revision == 2

        assert store.load().current_persona == Persona.PATIENT

    def test_namespaces_are_isolated(self, store):
        other = StateStore(namespace="other_state", database_url=store.database_url)

        store.save(AppState(current_persona=Persona.PEER))

        assert other.load().current_persona == Persona.PRIMARY

    def test_corrupt_payload_loads_fresh(self, store):
        store.save(AppState(current_persona=Persona.PEER))
        with get_db_session(store.database_url) as db:
            db.get(StateEntry, store.namespace).payload = '{"case": {"id": 42}}'

        assert store.load() == AppState()
