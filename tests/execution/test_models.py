"""Tests for request records and model helpers."""

import pytest

from agent_dispatch.core.errors import InvalidInputError
from agent_dispatch.execution.models import (
    CreateExecutionInput,
    ExecutionFilter,
    ExecutionStatus,
    Pagination,
    TransitionFields,
    parse_execution_id,
    parse_request,
    parse_status,
    stored_job_name,
)


class TestCreateExecutionInput:
    def test_camel_and_snake_case_accepted(self):
        a = parse_request(CreateExecutionInput, {"prompt": "x", "maxTokens": 10})
        b = parse_request(CreateExecutionInput, {"prompt": "x", "max_tokens": 10})
        assert a.max_tokens == b.max_tokens == 10

    @pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
    def test_blank_prompt_rejected(self, prompt):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_request(CreateExecutionInput, {"prompt": prompt})
        assert exc_info.value.details["field"] == "prompt"

    def test_missing_prompt_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_request(CreateExecutionInput, {})

    def test_unknown_field_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_request(CreateExecutionInput, {"prompt": "x", "priority": "high"})

    def test_resources_to_hints(self):
        req = parse_request(CreateExecutionInput, {"prompt": "x", "resources": {"cpu": "2", "memory": "4Gi"}})
        hints = req.resources.to_hints()
        assert (hints.cpu, hints.memory) == ("2", "4Gi")

    def test_bad_resource_quantity_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_request(CreateExecutionInput, {"prompt": "x", "resources": {"memory": "lots"}})

    def test_callback_url_must_be_http(self):
        with pytest.raises(InvalidInputError):
            parse_request(CreateExecutionInput, {"prompt": "x", "callbackUrl": "ftp://host"})


class TestPagination:
    def test_defaults(self):
        p = Pagination()
        assert (p.page, p.page_size, p.offset) == (1, 20, 0)

    def test_page_size_clamped_not_rejected(self):
        assert Pagination(page_size=200).page_size == 100

    @pytest.mark.parametrize("data", [{"page": 0}, {"page_size": 0}, {"page": -1}])
    def test_non_positive_rejected(self, data):
        with pytest.raises(InvalidInputError):
            parse_request(Pagination, data)

    def test_offset(self):
        assert Pagination(page=3, page_size=10).offset == 20


class TestExecutionFilter:
    def test_single_status(self):
        assert ExecutionFilter(status="running").statuses() == [ExecutionStatus.RUNNING]

    def test_status_list_deduplicated(self):
        flt = ExecutionFilter(status=["PENDING", "pending", "RUNNING"])
        assert flt.statuses() == [ExecutionStatus.PENDING, ExecutionStatus.RUNNING]

    def test_unknown_status_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_request(ExecutionFilter, {"status": "EXPLODED"})

    def test_inverted_date_range_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_request(
                ExecutionFilter,
                {"createdAfter": "2026-02-01T00:00:00Z", "createdBefore": "2026-01-01T00:00:00Z"},
            )


class TestTransitionFields:
    def test_supplied_skips_none(self):
        fields = TransitionFields(output="x", pod_name="pod-1")
        assert fields.supplied() == {"output": "x", "pod_name": "pod-1"}

    def test_result_fields_exclude_pod_name(self):
        fields = TransitionFields(pod_name="pod-1", error_code="E")
        assert fields.result_fields() == {"error_code": "E"}

    def test_negative_tokens_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_request(TransitionFields, {"tokensUsed": -1})


class TestHelpers:
    def test_parse_execution_id_canonicalises(self):
        raw = "0F8FAD5B-D9CB-469F-A165-70867728950E"
        assert parse_execution_id(raw) == raw.lower()

    @pytest.mark.parametrize("value", ["not-a-uuid", "", "1234"])
    def test_parse_execution_id_rejects_malformed(self, value):
        with pytest.raises(InvalidInputError) as exc_info:
            parse_execution_id(value)
        assert exc_info.value.details["field"] == "id"

    def test_parse_status(self):
        assert parse_status("completed") is ExecutionStatus.COMPLETED
        with pytest.raises(InvalidInputError):
            parse_status("DONE")

    def test_stored_job_name_uses_first_segment(self):
        assert stored_job_name("claude-agent", "0f8fad5b-d9cb-469f-a165-70867728950e") == "claude-agent-0f8fad5b"
