import threading

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import core.data_hub_client as data_hub_module
from conftest import FakeAgentClient
from core.agent_client import IndexedFile, ParsingStatus
from core.cache import KeyValueStore
from core.data_hub_client import DataHubClient, RetryPolicy, get_data_hub_client
from core.dependencies import get_agent
from database import AuditRiskDB, SessionLocal
from services.audit.agent_auditor import AuditAgent, AuditVerdict
from services.document_pipeline.jobs import PipelineJobs, get_pipeline_jobs


@pytest.fixture
def project_id(client):
    return client.post("/api/app/projects", json={"name": "审计项目"}).json()["data"]["id"]


def use_agent(client, replies):
    agent = FakeAgentClient(replies)
    client.sessions._agent = AuditAgent(agent)
    return agent


class GatedAgent:
    """Audit agent that holds each rule until the gate opens."""

    def __init__(self, gate):
        self.gate = gate

    def run_basic_audit(self, clues, items):
        self.gate.wait(5)
        return [AuditVerdict(clues[0].rule_code, clues[0].rule_name, "pass", "medium", "")]


class TestAuditRoutes:

    def test_audit_with_explicit_clues_and_confirm(self, client, project_id):
        use_agent(client, [
            '{"result": "存在问题", "description": "有效期不足", "severity": "high"}',
            '{"result": "通过"}',
        ])
        body = {
            "clues": [{"ruleCode": "R001", "ruleName": "有效期"}, {"ruleCode": "R002", "ruleName": "工期"}],
            "items": [{"source": "审计项目", "file": "招标文件", "field": "有效期", "content": "60天"}],
        }
        started = client.post(f"/api/app/projects/{project_id}/audit", json=body)
        assert started.status_code == 200
        client.sessions.wait(project_id, timeout=5)

        session = client.get(f"/api/app/projects/{project_id}/audit").json()["data"]
        assert session["state"] == "completed"
        assert [r["result"] for r in session["results"]] == ["fail", "pass"]

        confirmed = client.post(f"/api/app/projects/{project_id}/audit/confirm", json={"ruleCode": "R001", "saveAsRisk": True})
        assert confirmed.json()["data"]["risk"]["riskLevel"] == "high"
        db = SessionLocal()
        try:
            assert db.query(AuditRiskDB).filter_by(project_id=project_id).count() == 1
        finally:
            db.close()

        assert client.post(f"/api/app/projects/{project_id}/audit/confirm", json={"ruleCode": "R404"}).status_code == 404

    def test_audit_uses_enabled_rules_and_extracted_fields(self, client, project_id):
        agent = use_agent(client, ['{"result": "pass"}'])
        client.post("/api/app/audit-rules", json={"code": "R001", "name": "启用规则"})
        client.post("/api/app/audit-rules", json={"code": "R002", "name": "停用规则", "isEnabled": False})
        client.put(f"/api/app/projects/{project_id}/fields/F1", json={"fieldName": "项目名称", "value": "审计项目"})

        client.post(f"/api/app/projects/{project_id}/audit", json={})
        client.sessions.wait(project_id, timeout=5)

        assert len(agent.calls) == 1
        assert "R001" in agent.calls[0]["state"]["比对方式"]
        assert "R002" not in agent.calls[0]["state"]["比对方式"]
        assert "项目名称" in agent.calls[0]["state"]["待审查项目"]

    def test_audit_without_rules_or_items_is_400(self, client, project_id):
        assert client.post(f"/api/app/projects/{project_id}/audit", json={}).status_code == 400
        client.post("/api/app/audit-rules", json={"code": "R001", "name": "规则"})
        assert client.post(f"/api/app/projects/{project_id}/audit", json={}).status_code == 400

    def test_idle_session_and_reset(self, client, project_id):
        assert client.get(f"/api/app/projects/{project_id}/audit").json()["data"]["state"] == "idle"
        use_agent(client, ['{"result": "pass"}'])
        client.post(f"/api/app/projects/{project_id}/audit", json={
            "clues": [{"ruleCode": "R001", "ruleName": "a"}],
            "items": [{"field": "x", "content": "y"}],
        })
        client.sessions.wait(project_id, timeout=5)
        assert client.delete(f"/api/app/projects/{project_id}/audit").status_code == 200
        assert client.get(f"/api/app/projects/{project_id}/audit").json()["data"]["state"] == "idle"

    def test_restart_after_reset_while_running(self, client, project_id):
        gate = threading.Event()
        client.sessions._agent = GatedAgent(gate)
        body = {"clues": [{"ruleCode": "R001", "ruleName": "a"}], "items": [{"field": "x", "content": "y"}]}
        url = f"/api/app/projects/{project_id}/audit"

        try:
            assert client.post(url, json=body).status_code == 200
            assert client.delete(url).status_code == 200

            again = client.post(url, json=body)
            assert again.status_code == 200
            assert again.json()["message"] == "审计正在进行中"
            assert client.get(url).json()["data"]["state"] == "running"
        finally:
            gate.set()
            client.sessions.wait(project_id, timeout=5)

        assert client.get(url).json()["data"]["state"] == "completed"


class TestTaskRoutes:

    def test_list_clear_and_remove(self, client, tasks, project_id):
        done = tasks.add(project_id, "审计项目", "upload")
        tasks.update(done, status="completed")
        failed = tasks.add(project_id, "审计项目", "audit")
        tasks.update(failed, status="failed")

        data = client.get("/api/app/tasks").json()["data"]
        assert data["stats"] == {"running": 0, "completed": 1, "failed": 1}
        assert len(client.get(f"/api/app/tasks?project_id={project_id}").json()["data"]["tasks"]) == 2

        assert client.delete("/api/app/tasks/completed").json()["data"]["cleared"] == 1
        assert client.delete(f"/api/app/tasks/{failed}").status_code == 200
        assert client.delete(f"/api/app/tasks/{failed}").status_code == 404

    def test_retry(self, client, tasks, project_id):
        class RecordingJobs(PipelineJobs):
            dispatched = []

            def redispatch(self, task):
                self.dispatched.append(task["id"])
                return task["type"] == "extract"

        jobs = RecordingJobs(FakeAgentClient(), tasks)
        client.app.dependency_overrides[get_pipeline_jobs] = lambda: jobs

        task_id = tasks.add(project_id, "审计项目", "extract", fileId="file-1")
        tasks.update(task_id, status="failed", error="timeout")

        response = client.post(f"/api/app/tasks/{task_id}/retry")
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["retryCount"] == 1
        assert data["restarted"] is True
        assert jobs.dispatched == [task_id]

        assert client.post("/api/app/tasks/task-missing/retry").status_code == 404


class UploadAgent(FakeAgentClient):

    def upload_and_index(self, content, filename):
        return IndexedFile(file_id="agent-file-1", ds_id=42, file_url="http://files.test/1.pdf", file_name=filename)

    def check_parsing_status(self, ds_id):
        return ParsingStatus(status="processing", progress="40%", task_status=1)


class TestPipelineRoutes:

    @pytest.fixture
    def agent(self, client, tasks):
        agent = UploadAgent(['{"value": "审计项目"}'])
        jobs = PipelineJobs(agent, tasks)
        hub = DataHubClient(
            host="http://hub.test",
            token="t",
            http_client=httpx.Client(
                base_url="http://hub.test",
                transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": {
                    "fields": [{"fieldCode": "F1", "fieldName": "项目名称", "fieldCategory": "基本信息"}],
                }})),
            ),
            retry_policy=RetryPolicy(sleep=lambda seconds: None),
            cache=KeyValueStore(use_redis=False),
        )
        client.app.dependency_overrides[get_agent] = lambda: agent
        client.app.dependency_overrides[get_pipeline_jobs] = lambda: jobs
        client.app.dependency_overrides[get_data_hub_client] = lambda: hub
        return agent

    def upload(self, client, project_id, is_tender="true"):
        response = client.post(
            f"/api/app/projects/{project_id}/files/upload",
            files={"file": ("招标文件.pdf", b"%PDF-1.4", "application/pdf")},
            data={"isTender": is_tender},
        )
        assert response.status_code == 200
        return response.json()["data"]

    def test_upload_registers_tender_file(self, client, agent, tasks, project_id):
        data = self.upload(client, project_id)
        assert data["fileId"] == "agent-file-1"
        assert data["dsId"] == 42
        assert data["isTender"] is True

        project = client.get(f"/api/app/projects/{project_id}").json()["data"]
        assert project["tenderFileId"] == "agent-file-1"
        assert project["tenderDsId"] == 42
        assert tasks.get(data["taskId"])["status"] == "completed"

    def test_upload_marks_task_failed_when_save_fails(self, client, agent, tasks, project_id, monkeypatch):
        def failing_commit(session):
            raise OperationalError("INSERT INTO project_files", {}, Exception("database is gone"))

        monkeypatch.setattr(Session, "commit", failing_commit)
        response = client.post(
            f"/api/app/projects/{project_id}/files/upload",
            files={"file": ("招标文件.pdf", b"%PDF-1.4", "application/pdf")},
            data={"isTender": "true"},
        )
        assert response.status_code == 500

        upload_tasks = [t for t in tasks.list_tasks() if t["type"] == "upload"]
        assert len(upload_tasks) == 1
        assert upload_tasks[0]["status"] == "failed"
        assert "database is gone" in upload_tasks[0]["error"]

    def test_parsing_status(self, client, agent, project_id):
        data = self.upload(client, project_id)
        status = client.get(f"/api/app/projects/{project_id}/files/{data['id']}/parsing-status").json()["data"]
        assert status == {"status": "processing", "progress": "40%", "taskStatus": 1}

    def test_sync_extract_with_hub_definitions(self, client, agent, project_id):
        data = self.upload(client, project_id)
        response = client.post(
            f"/api/app/projects/{project_id}/files/{data['id']}/extract",
            json={"background": False},
        )
        fields = response.json()["data"]["fields"]
        assert fields[0]["fieldCode"] == "F1"
        assert fields[0]["value"] == "审计项目"
        assert agent.waited == [42]

        project_fields = client.get(f"/api/app/projects/{project_id}/fields").json()["data"]
        assert project_fields[0]["value"] == "审计项目"
        assert project_fields[0]["groupName"] == "基本信息"

    def test_extract_non_tender_needs_definitions(self, client, agent, project_id):
        data = self.upload(client, project_id, is_tender="false")
        response = client.post(f"/api/app/projects/{project_id}/files/{data['id']}/extract", json={})
        assert response.status_code == 400

    def test_sync_classify(self, client, agent, project_id):
        agent.replies = ['{"一级分类": "招标文件"}']
        data = self.upload(client, project_id)
        response = client.post(
            f"/api/app/projects/{project_id}/files/{data['id']}/classify",
            json={"background": False},
        )
        assert response.json()["data"]["docTypeName"] == "招标文件"
        files = client.get(f"/api/app/projects/{project_id}/files").json()["data"]
        assert files[0]["status"] == "classified"

    def test_extract_closes_hub_client_on_every_path(self, client, agent, project_id, monkeypatch):
        opened = []

        def recording_hub(host, token):
            hub = DataHubClient(
                host="http://hub.test",
                token=token,
                http_client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
                cache=KeyValueStore(use_redis=False),
            )
            opened.append(hub)
            return hub

        monkeypatch.setattr(data_hub_module, "DataHubClient", recording_hub)
        client.app.dependency_overrides.pop(get_data_hub_client)
        data = self.upload(client, project_id)

        response = client.post(
            f"/api/app/projects/{project_id}/files/{data['id']}/extract",
            json={"fields": [{"fieldCode": "F9", "fieldName": "工期"}], "background": False},
        )
        assert response.status_code == 200
        assert response.json()["data"]["fields"][0]["fieldCode"] == "F9"

        missing = client.post(f"/api/app/projects/{project_id}/files/file-missing/extract", json={})
        assert missing.status_code == 404

        assert len(opened) == 2
        assert all(hub.client.is_closed for hub in opened)
