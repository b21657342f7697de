from scholar_rag.app import server


def test_main_runs_the_api_with_the_given_config(monkeypatch):
    calls = []
    monkeypatch.setattr(server.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    monkeypatch.delenv("SCHOLAR_RAG_CONFIG", raising=False)

    server.main(["--config-file", "conf/dev.yaml", "--port", "9001", "--log-level", "debug"])

    assert calls == [
        ("scholar_rag.app.api:app", {"host": "0.0.0.0", "port": 9001, "reload": False, "log_level": "debug"})
    ]
    assert server.os.environ["SCHOLAR_RAG_CONFIG"] == "conf/dev.yaml"


def test_config_path_defaults_to_environment(monkeypatch):
    monkeypatch.setenv("SCHOLAR_RAG_CONFIG", "/srv/scholar.yaml")

    args = server.parse_args([])

    assert args.config_file == "/srv/scholar.yaml"
    assert (args.host, args.port, args.reload) == ("0.0.0.0", 8000, False)
