import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

import main
from models import AIConfigurationError, AIRateLimitError
from constants import TCLE_VERSION, UserRole
from seed import seed_catalogue
from sessions import SimulationService
from store import VetBalanceStore

STUDENT = {"X-User-Id": "student-1"}
PROFESSOR = {"X-User-Id": "prof-1"}

class TestVetBalanceAPI(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.store = VetBalanceStore(os.path.join(self.tmp, "api.db"))
        self.store.init_schema()
        seed_catalogue(self.store)
        self.store.upsert_profile("prof-1", "prof@vet.edu", "Dr. Prof")
        self.store.set_role("prof-1", UserRole.PROFESSOR)

        self.gateway = MagicMock()
        self.gateway.configured = False
        self.simulations = SimulationService(self.store, self.gateway)

        main.app.dependency_overrides[main.get_store] = lambda: self.store
        main.app.dependency_overrides[main.get_gateway] = lambda: self.gateway
        main.app.dependency_overrides[main.get_simulations] = lambda: self.simulations
        self.client = TestClient(main.app)

        self.case_id = next(c.id for c in self.store.list_cases() if c.name.startswith("Diabetic"))
        self.treatments = {t.name: t.id for t in self.store.list_treatments()}

    def tearDown(self):
        main.app.dependency_overrides.clear()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def register_student(self):
        response = self.client.post("/auth/register/student", headers=STUDENT,
                                    json={"email": "s1@vet.edu", "full_name": "Student One"})
        self.assertEqual(response.status_code, 201)

    def consent(self, accepted=True, headers=STUDENT):
        response = self.client.post("/me/consent", headers=headers, json={"accepted": accepted})
        self.assertEqual(response.status_code, 201)
        return response.json()

    def start(self, mode="practice"):
        if not self.store.has_accepted_consent("student-1", TCLE_VERSION):
            self.consent()
        response = self.client.post("/sessions", headers=STUDENT, json={"case_id": self.case_id, "mode": mode})
        self.assertEqual(response.status_code, 201)
        return response.json()["session_id"]

    def test_01_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["database"])
        self.assertEqual(body["live_sessions"], 0)
        self.assertFalse(body["ai_configured"])

    def test_02_identity_required(self):
        self.assertEqual(self.client.get("/me").status_code, 401)
        self.assertEqual(self.client.get("/me", headers={"X-User-Id": "  "}).status_code, 401)

    def test_03_registration(self):
        self.register_student()
        self.assertEqual(self.client.get("/me", headers=STUDENT).json()["role"], "student")
        again = self.client.post("/auth/register/student", headers=STUDENT,
                                 json={"email": "s1@vet.edu", "full_name": "Student One"})
        self.assertEqual(again.status_code, 409)

        bad_email = self.client.post("/auth/register/student", headers={"X-User-Id": "x"},
                                     json={"email": "not-an-email", "full_name": "X"})
        self.assertEqual(bad_email.status_code, 422)

        key = self.client.post("/access-keys", headers=PROFESSOR, json={"description": "Term"}).json()
        professor = self.client.post("/auth/register/professor", headers={"X-User-Id": "prof-2"},
                                     json={"email": "p2@vet.edu", "full_name": "P2",
                                           "access_key": key["access_key"]})
        self.assertEqual(professor.status_code, 201)
        self.assertEqual(self.client.get("/access-keys", headers=STUDENT).status_code, 403)

    def test_04_catalogue(self):
        parameters = {p["name"]: p for p in self.client.get("/parameters").json()}
        self.assertEqual(len(parameters), 14)
        self.assertTrue(parameters["pH"]["is_primary"])
        self.assertIn("acidemia", parameters["pH"]["clinical_note"])
        treatments = self.client.get("/treatments").json()
        self.assertTrue(all("effects" in t for t in treatments))

        student_view = self.client.get(f"/cases/{self.case_id}", headers=STUDENT).json()
        self.assertNotIn("condition_treatments", student_view)
        professor_view = self.client.get(f"/cases/{self.case_id}", headers=PROFESSOR).json()
        self.assertEqual(len(professor_view["condition_treatments"]), 3)
        self.assertEqual(self.client.get("/cases/999", headers=STUDENT).status_code, 404)

    def test_05_professor_cases(self):
        created = self.client.post("/cases", headers=PROFESSOR, json={
            "name": "Vomiting Beagle", "species": "canine", "primary_condition_id": 1,
            "initial_values": {"1": 7.52},
        })
        self.assertEqual(created.status_code, 201)
        case_id = created.json()["id"]
        self.assertEqual(created.json()["owner_id"], "prof-1")

        self.assertEqual(self.client.post("/cases", headers=STUDENT, json={
            "name": "Nope", "species": "feline"}).status_code, 403)
        unknown = self.client.put(f"/cases/{case_id}/initial-values", headers=PROFESSOR,
                                  json={"values": {"999": 1.0}})
        self.assertEqual(unknown.status_code, 422)

        goal = self.client.post(f"/cases/{case_id}/goals", headers=PROFESSOR, json={
            "title": "Correct pH", "goal_type": "parameter", "target_parameter": "pH",
            "target_value": 7.4, "tolerance": 0.05, "points": 30})
        self.assertEqual(goal.status_code, 201)
        self.assertEqual(len(self.client.get(f"/cases/{case_id}/goals").json()), 1)

        self.assertEqual(self.client.delete(f"/cases/{case_id}", headers=PROFESSOR).status_code, 204)

    def test_06_populate_case_errors(self):
        case_id = self.client.post("/cases", headers=PROFESSOR, json={
            "name": "Blank case", "species": "feline"}).json()["id"]
        self.gateway.populate_case_data.side_effect = AIConfigurationError("no key")
        self.assertEqual(self.client.post(f"/cases/{case_id}/populate", headers=PROFESSOR).status_code, 503)

        self.gateway.populate_case_data.side_effect = None
        self.gateway.populate_case_data.return_value = {
            "primary_parameters": [{"name": "pH", "value": 7.3}],
            "secondary_parameters": [],
            "appropriate_treatments": [{"name": "oxygen therapy", "priority": 1, "rationale": "Hypoxemia"},
                                       {"name": "Unknown Drug", "priority": 2}],
        }
        populated = self.client.post(f"/cases/{case_id}/populate", headers=PROFESSOR)
        self.assertEqual(populated.status_code, 200)
        self.assertEqual(len(populated.json()["case_treatments"]), 1)

    def test_06b_populate_with_malformed_reply(self):
        case_id = self.client.post("/cases", headers=PROFESSOR, json={
            "name": "Blank case", "species": "feline"}).json()["id"]
        self.gateway.populate_case_data.return_value = {
            "primary_parameters": ["pH"], "secondary_parameters": [], "appropriate_treatments": []}
        self.assertEqual(self.client.post(f"/cases/{case_id}/populate", headers=PROFESSOR).status_code, 502)

        self.gateway.populate_case_data.return_value = {
            "primary_parameters": [{"name": "pH", "value": 7.3}],
            "appropriate_treatments": ["oxygen therapy", None, {"name": None, "priority": 1}],
        }
        populated = self.client.post(f"/cases/{case_id}/populate", headers=PROFESSOR)
        self.assertEqual(populated.status_code, 200)
        self.assertEqual(populated.json()["case_treatments"], [])

    def test_07_session_flow(self):
        print("\nTEST 7: Session over HTTP")
        self.register_student()
        sid = self.start()

        ticked = self.client.post(f"/sessions/{sid}/tick", headers=STUDENT, json={"seconds": 5})
        self.assertEqual(ticked.json()["elapsed_seconds"], 5)
        self.assertEqual(self.client.post(f"/sessions/{sid}/tick", headers=STUDENT,
                                          json={"seconds": 120}).status_code, 422)

        treated = self.client.post(f"/sessions/{sid}/treatments", headers=STUDENT,
                                   json={"treatment_id": self.treatments["Lactated Ringer's Bolus"]})
        self.assertEqual(treated.json()["hp"], 69)
        self.assertEqual(self.client.get(f"/sessions/{sid}", headers=PROFESSOR).status_code, 403)

        finished = self.client.post(f"/sessions/{sid}/finish", headers=STUDENT, json={"notes": "Stopped"})
        self.assertEqual(finished.json()["status"], "abandoned")
        self.assertEqual(self.client.post(f"/sessions/{sid}/finish", headers=STUDENT).status_code, 409)

        stored = self.client.get(f"/sessions/{sid}", headers=STUDENT).json()
        self.assertEqual(stored["status"], "abandoned")
        replay = self.client.get(f"/sessions/{sid}/replay", headers=PROFESSOR).json()
        self.assertEqual(len(replay["treatments"]), 1)

        self.gateway.session_feedback.return_value = {"overall_analysis": "Keep going"}
        feedback = self.client.get(f"/sessions/{sid}/feedback", headers=STUDENT).json()
        self.assertEqual(feedback["feedback"]["overall_analysis"], "Keep going")

        self.assertEqual(self.client.delete(f"/sessions/{sid}", headers=STUDENT).status_code, 204)
        self.assertEqual(self.client.get(f"/sessions/{sid}", headers=STUDENT).status_code, 404)

    def test_08_hint_errors(self):
        sid = self.start("evaluation")
        self.assertEqual(self.client.post(f"/sessions/{sid}/hints", headers=STUDENT).status_code, 409)

        sid = self.start()
        self.gateway.treatment_hints.side_effect = AIRateLimitError("slow down")
        self.assertEqual(self.client.post(f"/sessions/{sid}/hints", headers=STUDENT).status_code, 429)
        self.assertEqual(self.client.get(f"/sessions/{sid}", headers=STUDENT).json()["hp"], 50)

    def test_09_notes(self):
        sid = self.start()
        note = self.client.post(f"/cases/{self.case_id}/notes", headers=STUDENT, json={
            "content": "pH trending up", "session_id": sid, "simulation_time": 0}).json()
        self.assertIn("pH", note["parameters_snapshot"])
        self.assertEqual(len(self.client.get(f"/cases/{self.case_id}/notes", headers=STUDENT).json()), 1)
        self.assertEqual(self.client.delete(f"/notes/{note['id']}", headers=PROFESSOR).status_code, 404)
        self.assertEqual(self.client.delete(f"/notes/{note['id']}", headers=STUDENT).status_code, 204)

    def test_10_rankings_and_reports(self):
        self.register_student()
        sid = self.start()
        self.client.post(f"/sessions/{sid}/finish", headers=STUDENT)

        self.assertEqual(self.client.get("/rankings").json(), [])
        self.assertEqual(self.client.get("/rankings?sort_by=speed").status_code, 422)
        self.assertEqual(self.client.get("/rankings/weekly?day=2026-10-15").json()["week_start"], "2026-10-12")
        self.assertEqual(self.client.get("/me/stats?period=week", headers=STUDENT).json()["total_sessions"], 1)

        csv_report = self.client.get("/me/report?format=csv", headers=STUDENT)
        self.assertTrue(csv_report.headers["content-type"].startswith("text/csv"))
        self.assertIn("abandoned", csv_report.text)
        self.assertEqual(self.client.get("/me/report?format=pdf", headers=STUDENT).status_code, 422)
        self.assertEqual(self.client.get("/me/report", headers=STUDENT).json()["total_sessions"], 1)

    def test_11_classes_and_sharing(self):
        self.register_student()
        klass = self.client.post("/classes", headers=PROFESSOR, json={"name": "Vet 101"}).json()
        added = self.client.post("/students", headers=PROFESSOR,
                                 json={"email": "s1@vet.edu", "class_id": klass["id"]})
        self.assertEqual(added.status_code, 201)
        self.assertEqual(self.client.post("/students", headers=PROFESSOR,
                                          json={"email": "ghost@vet.edu"}).status_code, 404)
        self.assertEqual(len(self.client.get("/students", headers=PROFESSOR).json()), 1)
        self.assertEqual(self.client.get("/students/student-1/report", headers=PROFESSOR).status_code, 200)

        shared = self.client.post("/shared-cases", headers=PROFESSOR,
                                  json={"case_id": self.case_id, "title": "Homework"}).json()
        redeemed = self.client.post("/shared-cases/redeem", headers=STUDENT,
                                    json={"access_code": shared["access_code"]})
        self.assertEqual(redeemed.json()["case_id"], self.case_id)

        renamed = self.client.patch(f"/classes/{klass['id']}", headers=PROFESSOR, json={"name": "Vet 102"})
        self.assertEqual(renamed.json()["name"], "Vet 102")

    def test_12_consent_gates_sessions(self):
        self.register_student()
        status = self.client.get("/me/consent", headers=STUDENT).json()
        self.assertEqual(status, {"version": TCLE_VERSION, "has_consent": False,
                                  "accepted": None, "recorded_at": None})

        body = {"case_id": self.case_id, "mode": "practice"}
        self.assertEqual(self.client.post("/sessions", headers=STUDENT, json=body).status_code, 403)
        self.assertFalse(self.consent(accepted=False)["has_consent"])
        self.assertEqual(self.client.post("/sessions", headers=STUDENT, json=body).status_code, 403)

        accepted = self.consent()
        self.assertTrue(accepted["has_consent"])
        self.assertTrue(accepted["accepted"])
        self.assertEqual(self.store.latest_consent("student-1")["user_agent"], "testclient")
        self.assertEqual(self.client.post("/sessions", headers=STUDENT, json=body).status_code, 201)
        self.assertEqual(self.client.post("/sessions", headers=PROFESSOR, json=body).status_code, 201)
        self.assertEqual(self.client.post("/me/consent", headers=STUDENT, json={}).status_code, 422)

        self.client.post("/students", headers=PROFESSOR, json={"email": "s1@vet.edu"})
        consents = self.client.get("/students/consents", headers=PROFESSOR).json()
        self.assertEqual([(c["student_id"], c["accepted"]) for c in consents], [("student-1", True)])
        self.assertEqual(self.client.get("/students/consents", headers=STUDENT).status_code, 403)

if __name__ == '__main__':
    unittest.main()
