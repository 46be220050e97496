import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig
from rest_api import PRAPI
from fastapi.testclient import TestClient


class PRAPITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_pr_api.db"
        self.yaml_path = "test_pr_api.yaml"
        self._cleanup()
        self.api = PRAPI(db_path=self.db_path, yaml_path=self.yaml_path)
        self.client = TestClient(self.api.app)
        resp = self.client.post("/exercises", params={"name": "Bench", "exercise_type": "barbell"})
        self.assertEqual(resp.status_code, 200)
        self.exercise_id = resp.json()["id"]

    def tearDown(self) -> None:
        self._cleanup()

    def _cleanup(self) -> None:
        for path in [self.db_path, self.yaml_path]:
            if os.path.exists(path):
                os.remove(path)

    def _log(self, weight, reps, logged_at, user_id=1):
        return self.client.post(
            "/lift_logs",
            json={
                "user_id": user_id,
                "exercise_id": self.exercise_id,
                "logged_at": logged_at,
                "sets": [{"weight": weight, "reps": reps}],
            },
        )

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_exercise_listing(self) -> None:
        resp = self.client.get("/exercises")
        self.assertEqual(resp.json()[0]["exercise_type"], "barbell")
        self.assertEqual(self.client.post("/exercises", params={"name": " "}).status_code, 400)

    def test_create_and_classify(self) -> None:
        resp = self._log(100, 5, "2024-01-01T09:00:00")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["lift_log"]["is_pr"])
        self.assertEqual(body["lift_log"]["pr_count"], 3)
        self.assertEqual(
            body["classifications"][0]["categories"], ["one_rm", "rep_specific", "volume"]
        )

        second = self._log(95, 5, "2024-01-02T09:00:00").json()["lift_log"]
        self.assertFalse(second["is_pr"])
        resp = self.client.get(f"/lift_logs/{second['id']}/classification")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertFalse(data["is_pr"])
        self.assertIn("one_rm", data["reasons"])
        self.assertEqual(data["rejections"][0]["blocking_lift_log_id"], 1)

    def test_records_and_chain(self) -> None:
        self._log(100, 5, "2024-01-01T09:00:00")
        self._log(110, 5, "2024-01-02T09:00:00")
        resp = self.client.get(
            "/records", params={"user_id": 1, "exercise_id": self.exercise_id, "pr_type": "one_rm"}
        )
        self.assertEqual([r["lift_log_id"] for r in resp.json()], [2])
        resp = self.client.get(
            "/records",
            params={"user_id": 1, "exercise_id": self.exercise_id, "pr_type": "rep_specific", "rep_count": 5},
        )
        self.assertEqual(resp.json()[0]["value"], 110.0)
        resp = self.client.get(
            "/records/chain",
            params={"user_id": 1, "exercise_id": self.exercise_id, "pr_type": "volume"},
        )
        chain = resp.json()
        self.assertEqual([r["value"] for r in chain], [500.0, 550.0])
        self.assertEqual(chain[1]["previous_pr_id"], chain[0]["id"])

    def test_update_and_delete(self) -> None:
        self._log(100, 5, "2024-01-01T09:00:00")
        second = self._log(110, 5, "2024-01-02T09:00:00").json()["lift_log"]["id"]
        resp = self.client.put(f"/lift_logs/{second}", json={"sets": [{"weight": 90, "reps": 5}]})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["lift_log"]["is_pr"])

        resp = self.client.delete(f"/lift_logs/{second}")
        self.assertEqual(resp.json()["status"], "deleted")
        self.assertEqual(self.client.get(f"/lift_logs/{second}").status_code, 404)
        self.assertEqual(self.client.delete(f"/lift_logs/{second}").status_code, 404)

    def test_audit_endpoints(self) -> None:
        self._log(100, 5, "2024-01-02T09:00:00")
        self._log(120, 5, "2024-01-01T09:00:00")
        resp = self.client.get("/audit/lift_logs/1")
        entries = resp.json()
        self.assertEqual(len(entries), 2)
        self.assertTrue(entries[1]["is_cascade"])
        self.assertIn("why_not_pr", entries[1]["calculation_snapshot"])
        resp = self.client.get(f"/audit/exercises/{self.exercise_id}", params={"user_id": 1})
        self.assertEqual(len(resp.json()), 3)

    def test_validation_errors(self) -> None:
        self.assertEqual(self._log(100, 0, "2024-01-01T09:00:00").status_code, 400)
        resp = self.client.post(
            "/lift_logs", json={"user_id": 1, "exercise_id": self.exercise_id, "sets": []}
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/lift_logs",
            json={"user_id": 1, "exercise_id": 42, "sets": [{"weight": 1, "reps": 1}]},
        )
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(self.client.get("/lift_logs/77/classification").status_code, 404)

    def test_recalculate_endpoint(self) -> None:
        self._log(100, 5, "2024-01-01T09:00:00")
        resp = self.client.post("/records/recalculate", params={"dry_run": True})
        self.assertEqual(resp.json()["processed"], 1)
        self.assertEqual(resp.json()["errors"], 0)


class CascadeLimitAPITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_pr_api_limit.db"
        self.yaml_path = "test_pr_api_limit.yaml"
        for path in [self.db_path, self.yaml_path]:
            if os.path.exists(path):
                os.remove(path)
        YamlConfig(self.yaml_path).save({"max_cascade_entries": 1})
        self.api = PRAPI(db_path=self.db_path, yaml_path=self.yaml_path)
        self.client = TestClient(self.api.app)
        self.exercise_id = self.api.exercises.add("Squat")

    def tearDown(self) -> None:
        for path in [self.db_path, self.yaml_path]:
            if os.path.exists(path):
                os.remove(path)

    def test_cascade_limit_conflict(self) -> None:
        payload = {
            "user_id": 1,
            "exercise_id": self.exercise_id,
            "logged_at": "2024-01-05T09:00:00",
            "sets": [{"weight": 100, "reps": 5}],
        }
        self.assertEqual(self.client.post("/lift_logs", json=payload).status_code, 200)
        payload["logged_at"] = "2024-01-01T09:00:00"
        resp = self.client.post("/lift_logs", json=payload)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(len(self.api.lift_logs.fetch_history(1, self.exercise_id)), 1)


if __name__ == "__main__":
    unittest.main()
