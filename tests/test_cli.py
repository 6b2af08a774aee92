from apps.codespaces import cli


def run(argv, container, monkeypatch, capsys, answer=None):
    if answer is not None:
        monkeypatch.setattr("builtins.input", lambda prompt: answer)
    code = cli.main(argv, container=container)
    return code, capsys.readouterr().out.splitlines()


def test_invalid_action(make_container, calls, monkeypatch, capsys):
    code, lines = run(["infrastructure", "invalid"], make_container(), monkeypatch, capsys)

    assert code == 1
    assert lines == ["Invalid action: invalid"]
    assert calls == []


def test_invalid_service(make_container, monkeypatch, capsys):
    code, lines = run(
        ["infrastructure", "start", "--service", "mysql", "--force"], make_container(), monkeypatch, capsys
    )

    assert code == 1
    assert lines == ["Invalid service: mysql"]


def test_declined_prompt_cancels(make_container, calls, monkeypatch, capsys):
    code, lines = run(["infrastructure", "stop"], make_container(), monkeypatch, capsys, answer="no")

    assert code == 0
    assert lines == ["Operation cancelled."]
    assert calls == []


def test_accepted_prompt_runs(make_container, calls, monkeypatch, capsys):
    code, lines = run(["infrastructure", "start"], make_container(), monkeypatch, capsys, answer="yes")

    assert code == 0
    assert lines == ["Starting infrastructure...", "All infrastructure services started successfully."]
    assert len(calls) == 3


def test_forced_service_failure(make_container, managers, monkeypatch, capsys):
    managers[0].fail_on["start"] = "Service unavailable"

    code, lines = run(
        ["infrastructure", "start", "--service", "docker", "--force"], make_container(), monkeypatch, capsys
    )

    assert code == 1
    assert lines[-1] == "Error: Service unavailable"


def test_status_prints_table(make_container, monkeypatch, capsys):
    code, lines = run(["infrastructure", "status"], make_container(), monkeypatch, capsys)

    assert code == 0
    assert lines[0] == "Checking infrastructure status..."
    assert lines[1].startswith("Component")
    assert [line.split()[0] for line in lines[2:]] == ["Docker", "Network", "Volumes", "Infrastructure"]


def test_health_reports_unhealthy_services(make_container, alerts, monkeypatch, capsys):
    container = make_container({"database": False, "redis": True})

    code, lines = run(["health"], container, monkeypatch, capsys)

    assert code == 1
    assert lines == ["database: UNHEALTHY", "redis: healthy", "Unhealthy services: database"]
    assert len(alerts.sent) == 1


def test_health_all_good(make_container, monkeypatch, capsys):
    code, lines = run(["health", "--detailed"], make_container(), monkeypatch, capsys)

    assert code == 0
    assert lines[0].startswith("database: healthy (OK, checked ")


def test_eof_on_prompt_declines(monkeypatch):
    def closed(prompt):
        raise EOFError

    monkeypatch.setattr("builtins.input", closed)

    assert cli.prompt_confirm("Are you sure you want to stop the infrastructure?") is False
