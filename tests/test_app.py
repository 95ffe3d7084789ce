import io
import json

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

import app as service

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def client(monkeypatch, in_process_worker):
    monkeypatch.setenv("TABULATION_API_KEY", TOKEN)
    service._req_times.clear()
    with TestClient(service.app) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers["X-Request-Id"]


def test_bad_token(client):
    r = client.post("/frequencies", json={}, headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_frequencies_json(client):
    body = {"variableData": [{"variable": {"name": "x", "type": "NUMERIC"}, "data": [1, 1, 2, "", 3]}]}
    r = client.post("/frequencies", json=body, headers=AUTH)
    assert r.status_code == 200
    out = r.json()
    assert out["success"] is True
    assert out["frequencies"][0]["missingRows"] == [
        {"label": "System", "frequency": 1, "percentOfTotal": 20.0},
    ]


def test_frequencies_failure_envelope(client):
    r = client.post("/frequencies", json={"variableData": "nope"}, headers=AUTH)
    assert r.status_code == 400
    out = r.json()
    assert out["success"] is False
    assert out["error"]


def test_frequencies_file(client):
    csv = b"score,name\n1,a\n1,b\n2,\n,c\n"
    variables = [{"name": "score", "type": "NUMERIC"}, {"name": "name", "type": "STRING"}]
    r = client.post(
        "/frequencies/file",
        files={"file": ("data.csv", csv, "text/csv")},
        data={"variables_json": json.dumps(variables)},
        headers=AUTH,
    )
    assert r.status_code == 200
    score, name = r.json()["frequencies"]
    assert [(row["label"], row["frequency"]) for row in score["validRows"]] == [("1", 2), ("2", 1)]
    assert score["missingN"] == 1
    assert [row["label"] for row in name["validRows"]] == ['""', "a", "b", "c"]


def test_frequencies_file_unknown_column(client):
    r = client.post(
        "/frequencies/file",
        files={"file": ("data.csv", b"a\n1\n", "text/csv")},
        data={"variables_json": json.dumps([{"name": "zzz"}])},
        headers=AUTH,
    )
    assert r.status_code == 404


def test_frequencies_file_bad_json(client):
    r = client.post(
        "/frequencies/file",
        files={"file": ("data.csv", b"a\n1\n", "text/csv")},
        data={"variables_json": "{not json"},
        headers=AUTH,
    )
    assert r.status_code == 400


def test_duplicates_json(client):
    body = {
        "data": [["A", 1], ["A", 2], ["B", 1]],
        "matchingVariables": [{"columnIndex": 0}],
        "primaryCaseIndicator": "first",
    }
    r = client.post("/duplicates", json=body, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["result"]["primaryValues"] == [1, 0, 1]


def test_duplicates_file_resolves_column_names(client):
    csv = b"id,visit\n7,2\n8,1\n7,1\n"
    options = {
        "matchingColumns": ["id"],
        "sortingColumns": ["visit"],
        "primaryCaseIndicator": "first",
        "sequentialCount": True,
        "moveMatchingToTop": True,
    }
    r = client.post(
        "/duplicates/file",
        files={"file": ("cases.csv", csv, "text/csv")},
        data={"options_json": json.dumps(options)},
        headers=AUTH,
    )
    assert r.status_code == 200
    result = r.json()["result"]
    assert result["reorderedData"] == [["7", "1"], ["7", "2"], ["8", "1"]]
    assert result["primaryValues"] == [1, 0, 1]
    assert result["sequenceValues"] == [1, 2, 1]


def test_export_statistics_xlsx(client):
    body = {"variableData": [{"variable": {"name": "x"}, "data": [1, 2, 2]}]}
    tables = client.post("/frequencies", json=body, headers=AUTH).json()["tables"]

    r = client.post("/export/statistics-xlsx", json={"tables": tables, "filename": "my report"}, headers=AUTH)
    assert r.status_code == 200
    assert r.headers["content-disposition"] == 'attachment; filename="my_report.xlsx"'
    wb = load_workbook(io.BytesIO(r.content))
    assert wb.sheetnames == ["Statistics", "x"]


def test_export_rejects_empty(client):
    r = client.post("/export/statistics-xlsx", json={"tables": []}, headers=AUTH)
    assert r.status_code == 400


def test_rate_limit(client, monkeypatch):
    monkeypatch.setattr(service, "RATE_LIMIT_MAX", 1)
    body = {"variableData": [{"variable": {"name": "x"}, "data": [1]}]}
    assert client.post("/frequencies", json=body, headers=AUTH).status_code == 200
    assert client.post("/frequencies", json=body, headers=AUTH).status_code == 429


def test_upload_size_limit(client, monkeypatch):
    monkeypatch.setattr(service, "MAX_UPLOAD_BYTES", 10)
    body = {"variableData": [{"variable": {"name": "x"}, "data": list(range(50))}]}
    assert client.post("/frequencies", json=body, headers=AUTH).status_code == 413


def test_non_finite_cell_returns_failure_envelope(client):
    raw = b'{"variableData": [{"variable": {"name": "x"}, "data": [Infinity, 1]}]}'
    r = client.post("/frequencies", content=raw,
                    headers={**AUTH, "Content-Type": "application/json"})
    assert r.status_code == 400
    out = r.json()
    assert out["success"] is False
    assert out["error"].startswith("Invalid request:")


def test_empty_frequency_batch(client):
    r = client.post("/frequencies", json={"variableData": []}, headers=AUTH)
    assert r.status_code == 200
    assert r.json()["frequencies"] == []


def test_frequencies_file_with_weight_column(client):
    csv = b"score,w\n1,2\n2,1\n3,\n"
    r = client.post(
        "/frequencies/file",
        files={"file": ("data.csv", csv, "text/csv")},
        data={
            "variables_json": json.dumps([{"name": "score"}]),
            "weight_column": "w",
            "percentile_method": "haverage",
        },
        headers=AUTH,
    )
    assert r.status_code == 200
    score = r.json()["frequencies"][0]
    assert [(row["label"], row["frequency"]) for row in score["validRows"]] == [("1", 2.0), ("2", 1.0)]
    assert score["totalN"] == 3.0
    assert [p["value"] for p in score["percentiles"]] == [1.0, 1.0, 2.0]
