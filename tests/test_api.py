"""HTTP API tests against the in-process ASGI app."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from conftest import add_employee, tenant_headers
from paie_engine.events.types import AcpPreviewComputed

RUNS = "/api/v1/payroll-runs"

MARCH = {
    "period_start": "2024-03-01",
    "period_end": "2024-03-31",
    "payment_date": "2024-03-29",
}


async def create_run(client, tenant, **overrides):
    response = await client.post(RUNS, json={**MARCH, **overrides}, headers=tenant_headers(tenant))
    assert response.status_code == 201, response.text
    return response.json()


async def calculated_run(client, task_runner, tenant):
    run = await create_run(client, tenant)
    response = await client.post(f"{RUNS}/{run['id']}/calculate", headers=tenant_headers(tenant))
    assert response.status_code == 202, response.text
    await task_runner.drain()
    return run


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "healthy"
        assert body["engine_version"] == "test"

    async def test_probes(self, client):
        assert (await client.get("/ready")).json() == {"status": "ready"}
        assert (await client.get("/live")).json() == {"status": "alive"}


class TestPayrollRuns:
    async def test_create_run(self, client, tenant):
        run = await create_run(client, tenant)

        assert run["status"] == "draft"
        assert run["country_code"] == "CI"
        assert run["created_by"] == "rh-001"
        assert run["run_number"]

    async def test_missing_tenant_header(self, client, tenant):
        response = await client.post(RUNS, json=MARCH)

        assert response.status_code == 400

    async def test_malformed_tenant_header(self, client, tenant):
        response = await client.get(RUNS, headers={"X-Tenant-ID": "not-a-uuid"})

        assert response.status_code == 400

    async def test_duplicate_period_conflict(self, client, tenant):
        await create_run(client, tenant)

        response = await client.post(RUNS, json=MARCH, headers=tenant_headers(tenant))

        assert response.status_code == 409
        assert response.json()["code"] == "CONCURRENCY_CONFLICT"

    async def test_inverted_period_rejected(self, client, tenant):
        response = await client.post(
            RUNS,
            json={**MARCH, "period_end": "2024-02-01"},
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 422

    async def test_unknown_run(self, client, tenant):
        response = await client.get(f"{RUNS}/{uuid4()}", headers=tenant_headers(tenant))

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_list_runs_by_status(self, client, tenant):
        await create_run(client, tenant)

        drafts = await client.get(RUNS, params={"status": "draft"}, headers=tenant_headers(tenant))
        paid = await client.get(RUNS, params={"status": "paid"}, headers=tenant_headers(tenant))

        assert drafts.json()["total"] == 1
        assert paid.json()["total"] == 0


class TestCalculationFlow:
    """Create, calculate, approve and pay a run over HTTP."""

    async def test_full_lifecycle(self, client, task_runner, tenant, employee):
        headers = tenant_headers(tenant)
        run = await create_run(client, tenant)

        started = await client.post(f"{RUNS}/{run['id']}/calculate", headers=headers)
        assert started.status_code == 202
        assert started.json()["run_status"] == "calculating"

        await task_runner.drain()

        progress = (await client.get(f"{RUNS}/{run['id']}/progress", headers=headers)).json()
        assert progress["status"] == "completed"
        assert progress["completion_status"] == "completed"
        assert Decimal(progress["percent_complete"]) == Decimal("100")

        items = (await client.get(f"{RUNS}/{run['id']}/line-items", headers=headers)).json()
        assert items["total"] == 1
        (item,) = items["items"]
        assert item["employee_number"] == "E001"
        assert Decimal(item["net_salary"]) == Decimal("241100")
        assert Decimal(item["total_employer_cost"]) == Decimal("329550")

        approved = await client.post(f"{RUNS}/{run['id']}/approve", headers=headers)
        assert approved.status_code == 200
        assert approved.json()["approved_by"] == "rh-001"

        paid = await client.post(f"{RUNS}/{run['id']}/mark-paid", headers=headers)
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"

        again = await client.post(f"{RUNS}/{run['id']}/mark-paid", headers=headers)
        assert again.status_code == 409
        assert again.json()["code"] == "IMMUTABILITY_VIOLATION"

    async def test_line_items_unavailable_for_draft(self, client, tenant):
        run = await create_run(client, tenant)

        response = await client.get(
            f"{RUNS}/{run['id']}/line-items", headers=tenant_headers(tenant)
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_approve_draft_is_invalid(self, client, tenant):
        run = await create_run(client, tenant)

        response = await client.post(
            f"{RUNS}/{run['id']}/approve", headers=tenant_headers(tenant)
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    async def test_recalculate_employee(self, client, task_runner, tenant, employee):
        run = await calculated_run(client, task_runner, tenant)

        response = await client.post(
            f"{RUNS}/{run['id']}/employees/{employee.id}/recalculate",
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["changed"] is False
        assert Decimal(body["previous_net"]) == Decimal(body["net_salary"])

    async def test_pause_draft_rejected(self, client, tenant):
        run = await create_run(client, tenant)

        response = await client.post(f"{RUNS}/{run['id']}/pause", headers=tenant_headers(tenant))

        assert response.status_code == 409


class TestAcpEndpoints:
    async def test_preview(self, client, session_factory, tenant):
        employee = await add_employee(session_factory, tenant, "E020", hire_date=date(2019, 3, 1))

        response = await client.get(
            f"/api/v1/employees/{employee.id}/acp-preview",
            params={"as_of": "2024-03-15"},
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["seniority_bonus_days"] == 1
        assert Decimal(body["daily_average_salary"]) == Decimal("10000")
        assert "no_salary_history" in [w["code"] for w in body["warnings"]]

    async def test_preview_unknown_employee(self, client, tenant):
        response = await client.get(
            f"/api/v1/employees/{uuid4()}/acp-preview",
            params={"as_of": "2024-03-15"},
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 404

    async def test_schedule_and_cancel(self, client, tenant, employee):
        url = f"/api/v1/employees/{employee.id}/acp-payment"
        headers = tenant_headers(tenant)

        scheduled = await client.put(
            url, json={"payment_date": "2024-03-15", "active": True}, headers=headers
        )
        assert scheduled.status_code == 200
        assert scheduled.json()["acp_payment_date"] == "2024-03-15"

        listing = (await client.get("/api/v1/acp/scheduled", headers=headers)).json()
        assert [e["employee_number"] for e in listing] == ["E001"]

        cancelled = await client.put(url, json={"active": False}, headers=headers)
        assert cancelled.json()["acp_payment_date"] is None
        assert (await client.get("/api/v1/acp/scheduled", headers=headers)).json() == []

    async def test_active_schedule_needs_date(self, client, tenant, employee):
        response = await client.put(
            f"/api/v1/employees/{employee.id}/acp-payment",
            json={"active": True},
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 422

    async def test_leave_approval_triggers_preview(self, client, emitter, tenant, employee):
        previews = []
        emitter.on(AcpPreviewComputed, previews.append)

        response = await client.post(
            f"/api/v1/leave-requests/{uuid4()}/approved",
            json={
                "employee_id": str(employee.id),
                "start_date": "2024-04-02",
                "end_date": "2024-04-12",
            },
            headers=tenant_headers(tenant),
        )

        assert response.status_code == 202
        assert len(previews) == 1
        assert previews[0].employee_id == employee.id


class TestPolicyEndpoints:
    async def test_list_overtime_rates(self, client, ci_policies):
        response = await client.get(
            "/api/v1/policies/ci/overtime-rates", params={"as_of": "2024-03-31"}
        )

        assert response.status_code == 200
        rates = response.json()
        assert len(rates) == 6
        assert all(r["locked"] for r in rates)

    async def test_locked_rate_patch_conflict(self, client, ci_policies):
        rates = (
            await client.get("/api/v1/policies/CI/overtime-rates", params={"as_of": "2024-03-31"})
        ).json()

        response = await client.patch(
            f"/api/v1/policies/overtime-rates/{rates[0]['id']}",
            json={"rate_multiplier": "200"},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "POLICY_VIOLATION"

    async def test_non_positive_multiplier_rejected(self, client, ci_policies):
        response = await client.patch(
            f"/api/v1/policies/overtime-rates/{uuid4()}", json={"rate_multiplier": "0"}
        )

        assert response.status_code == 422

    async def test_rate_definitions(self, client, ci_policies):
        response = await client.get(
            "/api/v1/policies/CI/rate-definitions", params={"as_of": "2024-03-31"}
        )

        codes = sorted(d["code"] for d in response.json())
        assert codes == ["CMU", "CNPS_AT", "CNPS_MAT", "CNPS_PF", "CNPS_RET", "ITS"]
