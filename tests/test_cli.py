import json

import pytest

import cli


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


@pytest.fixture
def calls(monkeypatch):
    seen = []

    def fake(method, ok=True):
        def _call(url, **kw):
            seen.append((method, url, kw))
            return _Resp({"url": url}, ok=ok)

        return _call

    monkeypatch.setattr(cli.requests, "get", fake("GET"))
    monkeypatch.setattr(cli.requests, "put", fake("PUT"))
    monkeypatch.setattr(cli.requests, "post", fake("POST"))
    return seen


def test_list_targets_clusters_by_default(calls, capsys):
    assert cli.main(["list"]) == 0
    method, url, kw = calls[0]
    assert (method, url) == ("GET", "http://localhost:8000/clusters")
    assert kw["params"] is None
    assert json.loads(capsys.readouterr().out) == {"url": url}


def test_standalone_flag_and_namespace(calls):
    cli.main(["--api", "http://op:9000/", "--standalone", "get", "solo", "-n", "vectors"])
    assert calls[0][1] == "http://op:9000/standalones/vectors/solo"


def test_apply_reads_yaml_spec_section(calls, tmp_path):
    f = tmp_path / "demo.yaml"
    f.write_text(
        "apiVersion: milvus.io/v1alpha1\n"
        "kind: MilvusCluster\n"
        "spec:\n"
        "  dep:\n"
        "    storage:\n"
        "      endpoint: minio:9000\n",
        encoding="utf-8",
    )
    assert cli.main(["apply", "demo", "-f", str(f)]) == 0
    method, url, kw = calls[0]
    assert (method, url) == ("PUT", "http://localhost:8000/clusters/default/demo")
    assert kw["json"] == {"dep": {"storage": {"endpoint": "minio:9000"}}}


def test_apply_accepts_bare_spec(calls, tmp_path):
    f = tmp_path / "spec.json"
    f.write_text(json.dumps({"conf": {"data": {"log": {"level": "debug"}}}}), encoding="utf-8")
    cli.main(["--standalone", "apply", "solo", "-f", str(f)])
    assert calls[0][2]["json"] == {"conf": {"data": {"log": {"level": "debug"}}}}


def test_sync_failure_exit_code(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "post", lambda url, **kw: _Resp({"detail": "probe failed"}, ok=False))
    assert cli.main(["sync", "demo"]) == 1
    assert "probe failed" in capsys.readouterr().out


def test_events_limit(calls):
    cli.main(["events", "--limit", "5"])
    assert calls[0][1] == "http://localhost:8000/events"
    assert calls[0][2]["params"] == {"limit": 5}


@pytest.mark.parametrize("argv", [["events", "--limit", "0"], ["list"], ["--standalone", "list", "-n", "x"]])
def test_error_answers_exit_nonzero(monkeypatch, capsys, argv):
    detail = {"detail": [{"loc": ["query", "limit"], "msg": "Input should be greater than or equal to 1"}]}
    monkeypatch.setattr(cli.requests, "get", lambda url, **kw: _Resp(detail, ok=False))
    assert cli.main(argv) == 1
    assert "greater than or equal" in capsys.readouterr().out
