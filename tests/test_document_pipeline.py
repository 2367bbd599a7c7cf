import pytest

from conftest import FakeAgentClient
from core.agent_client import AgentServiceError, IndexedFile
from database import FileFieldDB, ProjectDB, ProjectFieldDB, ProjectFileDB, SessionLocal
from services.document_pipeline import (
    DocumentClassifier,
    FieldDefinition,
    FieldExtractor,
    parse_classification,
)
from services.document_pipeline.jobs import PipelineJobs


class TestParseClassification:

    @pytest.mark.parametrize("content, expected", [
        ('{"一级分类": "商务文件", "二级分类": "投标函", "三级分类": ""}', ("商务文件/投标函", "投标函")),
        ('```json\n{"level1": "技术文件", "level2": "施工方案", "level3": "进度计划"}\n```',
         ("技术文件/施工方案/进度计划", "进度计划")),
        ('{"docTypeCode": "ZT01", "docTypeName": "营业执照"}', ("ZT01", "营业执照")),
        ('{"文件类型": "资质证书"}', (None, "资质证书")),
        ('{"ZT02": "报价单"}', ("ZT02", "报价单")),
        ("文件类型：施工合同", (None, "施工合同")),
        ("分类: 授权委托书", (None, "授权委托书")),
        ("该文档是「投标保证金」文件", (None, "投标保证金")),
        ("业绩证明", (None, "业绩证明")),
        ("这是一段很长的说明\n无法判断", (None, None)),
        ("", (None, None)),
    ])
    def test_shapes(self, content, expected):
        assert parse_classification(content) == expected


class TestDocumentClassifier:

    def test_classify_file_sends_file_reference(self):
        client = FakeAgentClient(['{"docTypeCode": "C1", "docTypeName": "营业执照"}'])
        result = DocumentClassifier(client).classify_file("f-1", "执照.pdf")

        assert client.calls[0]["agent"] == "fileClassify"
        assert client.calls[0]["state"] == {"fileId": "f-1"}
        assert client.calls[0]["files"] == [{"fileId": "f-1"}]
        assert (result.doc_type_code, result.doc_type_name) == ("C1", "营业执照")

    def test_agent_error_gives_unknown_type(self):
        client = FakeAgentClient(error=AgentServiceError("down"))
        result = DocumentClassifier(client).classify_file("f-1", "执照.pdf")
        assert result.doc_type_name is None
        assert result.raw_response == "down"

    def test_process_files_isolates_failures(self):
        class UploadingClient(FakeAgentClient):
            def upload_and_index(self, content, filename):
                if filename == "bad.pdf":
                    raise AgentServiceError("upload failed")
                return IndexedFile(file_id=f"id-{filename}", ds_id=5, file_url="", file_name=filename)

        client = UploadingClient(['{"docTypeName": "投标函"}'])
        results = DocumentClassifier(client).process_files([("bad.pdf", b"x"), ("good.pdf", b"y")])

        assert [r.file_name for r in results] == ["bad.pdf", "good.pdf"]
        assert results[0].doc_type_name is None
        assert results[1].doc_type_name == "投标函"
        assert results[1].ds_id == 5
        assert client.waited == [5]


class TestFieldExtractor:

    def test_definition_from_hub_fields(self):
        definition = FieldDefinition.from_dict({
            "fieldCode": "F01",
            "fieldName": "项目名称",
            "anchorWord": ["项目名称", "工程名称"],
            "fieldCategory": "基本信息",
            "enumOptions": None,
        })
        assert definition.anchor_word == "项目名称,工程名称"
        assert definition.group_name == "基本信息"
        assert definition.enum_options == ""

    def test_state_bag_is_escaped_with_default_format(self):
        state = FieldDefinition("F01", "项目\n名称", description='含"引号"').to_state("f-1")
        assert state["fileId"] == "f-1"
        assert state["字段名称"] == "项目\\n名称"
        assert state["字段说明"] == '含\\"引号\\"'
        assert state["输出格式"] == "字符串"

    def test_batch_extract_keeps_order_and_isolates_errors(self):
        client = FakeAgentClient([
            '```json\n{"value": "示例工程"}\n```',
            AgentServiceError("agent timeout"),
            "未找到",
        ])
        definitions = [FieldDefinition("F1", "项目名称"), FieldDefinition("F2", "预算"), FieldDefinition("F3", "工期")]
        results = FieldExtractor(client).batch_extract("f-1", definitions)

        assert [r.field_code for r in results] == ["F1", "F2", "F3"]
        assert (results[0].value, results[0].status) == ("示例工程", "auto")
        assert (results[1].value, results[1].status) == (None, "missing")
        assert results[1].raw_response == "agent timeout"
        assert (results[2].value, results[2].status) == (None, "missing")
        assert all(call["agent"] == "normalExtract" for call in client.calls)

    def test_vision_extract_uses_raw_text(self):
        client = FakeAgentClient(["  盖章清晰  "])
        result = FieldExtractor(client).extract_with_vision("f-1", "公章", "检查公章")
        assert client.calls[0]["agent"] == "visionExtract"
        assert result.value == "盖章清晰"
        assert result.status == "auto"


class TestPipelineJobs:

    @pytest.fixture
    def tender_file(self, db):
        db.add(ProjectDB(id="p1", name="项目"))
        db.add(ProjectFileDB(id="file-1", project_id="p1", file_name="招标文件.pdf", file_id="agent-file", ds_id=9, is_tender=True))
        db.commit()
        return db.get(ProjectFileDB, "file-1")

    def test_run_extraction_stores_fields(self, db, tasks, tender_file):
        client = FakeAgentClient(['{"value": "示例工程", "page": 2, "snippet": "项目名称：示例工程"}', "未找到"])
        jobs = PipelineJobs(client, tasks, session_factory=SessionLocal)
        task_id = tasks.add("p1", "项目", "extract", status="pending")

        definitions = [FieldDefinition("F1", "项目名称", group_name="基本信息"), FieldDefinition("F2", "预算")]
        jobs.run_extraction("file-1", definitions, task_id)

        assert client.waited == [9]
        db.expire_all()
        file_fields = {f.field_code: f for f in db.query(FileFieldDB).filter_by(file_id="file-1")}
        assert file_fields["F1"].field_value == "示例工程"
        assert file_fields["F1"].evidence_page == 2
        assert file_fields["F2"].status == "missing"
        # Tender files also fill the project's fields
        assert db.query(ProjectFieldDB).filter_by(project_id="p1").count() == 2
        assert db.get(ProjectFileDB, "file-1").extraction_status == "completed"
        assert tasks.get(task_id)["status"] == "completed"

    def test_rerunning_extraction_does_not_duplicate(self, db, tasks, tender_file):
        jobs = PipelineJobs(FakeAgentClient(['"a"', '"b"']), tasks)
        task_id = tasks.add("p1", "项目", "extract")
        definitions = [FieldDefinition("F1", "项目名称")]
        jobs.run_extraction("file-1", definitions, task_id)
        jobs.run_extraction("file-1", definitions, task_id)

        db.expire_all()
        rows = db.query(FileFieldDB).filter_by(file_id="file-1").all()
        assert [(r.field_code, r.field_value) for r in rows] == [("F1", "b")]

    def test_failed_wait_marks_file_and_task(self, db, tasks, tender_file):
        class FailingParse(FakeAgentClient):
            def wait_for_parsing(self, ds_id):
                raise AgentServiceError("Dataset 9 parsing failed")

        jobs = PipelineJobs(FailingParse(), tasks)
        task_id = tasks.add("p1", "项目", "extract")
        with pytest.raises(AgentServiceError):
            jobs.run_extraction("file-1", [FieldDefinition("F1", "项目名称")], task_id)

        db.expire_all()
        assert db.get(ProjectFileDB, "file-1").extraction_status == "failed"
        assert tasks.get(task_id)["status"] == "failed"
        assert tasks.get(task_id)["error"] == "Dataset 9 parsing failed"

    def test_run_classification(self, db, tasks, tender_file):
        jobs = PipelineJobs(FakeAgentClient(['{"一级分类": "招标文件"}']), tasks)
        task_id = tasks.add("p1", "项目", "classify")
        result = jobs.run_classification("file-1", task_id)

        assert result.doc_type_name == "招标文件"
        db.expire_all()
        stored = db.get(ProjectFileDB, "file-1")
        assert stored.doc_type_name == "招标文件"
        assert stored.status == "classified"

    def test_redispatch_only_reruns_pipeline_tasks(self, tasks):
        jobs = PipelineJobs(FakeAgentClient(), tasks)
        assert jobs.redispatch({"id": "t1", "type": "audit", "fileId": "file-1"}) is False
        assert jobs.redispatch({"id": "t2", "type": "extract"}) is False
