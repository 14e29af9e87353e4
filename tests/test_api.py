import json
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from premium_finance import api


PLAN = {
    "death_benefit": 50_000_000,
    "out_of_pocket": 700_000,
    "payment_years": 15,
    "premium_years": 10,
    "annual_premium": 2_400_000,
    "first_year_fee": 10_000,
    "start_age": 45,
    "initial_exposure": 3_044_886,
}


class TestProjectionApi(unittest.TestCase):
    def setUp(self):
        self._limiter_enabled = api.limiter.enabled
        api.limiter.enabled = False
        self.client = TestClient(api.app)

    def tearDown(self):
        api.limiter.enabled = self._limiter_enabled

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_default_rates(self):
        resp = self.client.get("/v1/rates:defaults", params={"horizon": 10})
        self.assertEqual(resp.status_code, 200)
        rates = resp.json()["yearly_rates"]
        self.assertEqual(len(rates), 10)
        self.assertEqual(rates[0], {"year": 1, "rate_of_return": 6.5, "borrow_rate": 5.5})

    def test_calc_projection(self):
        resp = self.client.post("/v1/projections:calc", json=PLAN)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["ledger_policy"], "standard")
        self.assertEqual(len(data["rows"]), 30)
        first = data["rows"][0]
        self.assertAlmostEqual(first["boy_bal"], 1_700_000)
        self.assertAlmostEqual(first["interest_charge"], 93_500)
        self.assertAlmostEqual(first["eoy_bal"], 1_793_500)
        self.assertEqual(data["summary"]["payoff_year"], 15)
        self.assertAlmostEqual(data["summary"]["total_out_of_pocket"], 10_500_000)

    def test_calc_projection_with_rates_and_policy(self):
        body = dict(
            PLAN,
            horizon=5,
            ledger_policy="Capitalized",
            yearly_rates=[{"year": 1, "rate_of_return": 7.0, "borrow_rate": 0}],
        )
        resp = self.client.post("/v1/projections:calc", json=body)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["ledger_policy"], "capitalized")
        self.assertEqual(len(data["rows"]), 5)
        self.assertEqual(data["rows"][0]["rate_of_return"], 7.0)
        self.assertEqual(data["rows"][0]["interest_charge"], 0)
        self.assertAlmostEqual(data["rows"][0]["total_cost"], 710_000)

    def test_invalid_inputs_rejected(self):
        cases = [
            dict(PLAN, payment_years=-1),
            dict(PLAN, ledger_policy="bogus"),
            dict(PLAN, horizon=0),
            dict(PLAN, horizon=api.MAX_HORIZON + 1),
            dict(PLAN, horizon=5, yearly_rates=[{"year": 6}]),
        ]
        for body in cases:
            resp = self.client.post("/v1/projections:calc", json=body)
            self.assertEqual(resp.status_code, 422, body)

    def test_overrides_are_normalized_and_applied(self):
        body = dict(PLAN, overrides={"1": 0, "2": 700_000})
        resp = self.client.post("/v1/projections:overrides", json=body)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["applied_overrides"], {"1": 0.0})
        self.assertEqual(data["rows"][0]["oop"], 0)
        self.assertAlmostEqual(data["rows"][0]["boy_bal"], 2_400_000)
        self.assertAlmostEqual(data["summary"]["total_out_of_pocket"], 9_800_000)

    def test_override_year_out_of_range(self):
        body = dict(PLAN, horizon=10, overrides={"11": 100})
        resp = self.client.post("/v1/projections:overrides", json=body)
        self.assertEqual(resp.status_code, 422)

    def test_compare(self):
        body = {
            "horizon": 20,
            "scenarios": [
                dict(PLAN, name="Base"),
                dict(PLAN, name="Lean", out_of_pocket=500_000),
            ],
        }
        resp = self.client.post("/v1/projections:compare", json=body)
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual([s["name"] for s in data["scenarios"]], ["Base", "Lean"])
        self.assertAlmostEqual(data["scenarios"][1]["total_cost"], 7_500_000)
        self.assertEqual(len(data["cash_value_by_year"]), 20)
        self.assertEqual(set(data["cash_value_by_year"]["20"]), {"Base", "Lean"})

    def _post_raw(self, path, body):
        # json.dumps 默认输出 NaN / Infinity 字面量，模拟不规范的客户端
        return self.client.post(
            path, content=json.dumps(body), headers={"content-type": "application/json"}
        )

    def test_non_finite_plan_amounts_rejected(self):
        for value in (float("nan"), float("inf"), float("-inf")):
            resp = self._post_raw("/v1/projections:calc", dict(PLAN, death_benefit=value))
            self.assertEqual(resp.status_code, 422, value)
        rates = [{"year": 1, "rate_of_return": float("nan")}]
        resp = self._post_raw("/v1/projections:calc", dict(PLAN, yearly_rates=rates))
        self.assertEqual(resp.status_code, 422)

    def test_non_finite_override_rejected(self):
        for value in (float("nan"), float("inf")):
            body = dict(PLAN, overrides={"3": value})
            resp = self._post_raw("/v1/projections:overrides", body)
            self.assertEqual(resp.status_code, 422, value)

    def test_negative_override_rejected(self):
        body = dict(PLAN, overrides={"3": -1})
        resp = self.client.post("/v1/projections:overrides", json=body)
        self.assertEqual(resp.status_code, 422)

    def test_compare_rejects_rate_year_beyond_horizon(self):
        body = {
            "horizon": 5,
            "scenarios": [dict(PLAN, name="A", yearly_rates=[{"year": 50}])],
        }
        resp = self.client.post("/v1/projections:compare", json=body)
        self.assertEqual(resp.status_code, 422)

    def test_compare_rejects_duplicate_names(self):
        body = {"scenarios": [dict(PLAN, name="A"), dict(PLAN, name="A")]}
        resp = self.client.post("/v1/projections:compare", json=body)
        self.assertEqual(resp.status_code, 422)

    def test_api_key_required_when_configured(self):
        with patch.object(api, "API_KEY", "secret"):
            resp = self.client.post("/v1/projections:calc", json=PLAN)
            self.assertEqual(resp.status_code, 401)
            resp = self.client.post(
                "/v1/projections:calc", json=PLAN, headers={"x-api-key": "secret"}
            )
            self.assertEqual(resp.status_code, 200)


class TestRateLimit(unittest.TestCase):
    def setUp(self):
        self._limiter_enabled = api.limiter.enabled
        api.limiter.enabled = True
        api.limiter.reset()
        self.client = TestClient(api.app)

    def tearDown(self):
        api.limiter.reset()
        api.limiter.enabled = self._limiter_enabled

    def test_requests_over_limit_get_429(self):
        limit = int(api.DEFAULT_RATE_LIMIT.split("/")[0])
        statuses = [
            self.client.get("/v1/rates:defaults", params={"horizon": 1}).status_code
            for _ in range(limit + 1)
        ]
        self.assertEqual(statuses[0], 200)
        self.assertEqual(statuses[-1], 429)
        resp = self.client.get("/v1/rates:defaults", params={"horizon": 1})
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json(), {"detail": "Rate limit exceeded"})

    def test_health_is_exempt(self):
        limit = int(api.DEFAULT_RATE_LIMIT.split("/")[0])
        for _ in range(limit + 1):
            resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)


if __name__ == "__main__":
    unittest.main()
