import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import httpx
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# The module-level engine must never point at a real server during tests
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.mkdtemp(), "supervisor_default.db")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from Database import AgentRun, Base, MaintenanceAgent, RunStatus, TriggerSource  # noqa: E402
from Database.base import build_engine  # noqa: E402
from Database.DatabaseConfig import AppConfig, TriggerConfig  # noqa: E402
from Supervisor.CircuitBreaker import reset_all_circuits  # noqa: E402
from Supervisor.Notifications import Notifier  # noqa: E402
from Supervisor.RetryOrchestrator import RetryOrchestrator  # noqa: E402
from Supervisor.RunLedger import RunLedger  # noqa: E402

# Wednesday
NOW = datetime(2026, 3, 4, 12, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    def send(self, event, payload):
        if self.fail:
            raise RuntimeError("notification channel down")
        self.events.append((event, payload))
        return True

    def of(self, event):
        return [payload for name, payload in self.events if name == event]


@pytest.fixture(autouse=True)
def _reset_circuits():
    reset_all_circuits()
    yield
    reset_all_circuits()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'supervisor.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def ledger(db):
    return RunLedger(db)


@pytest.fixture
def config():
    return AppConfig(
        trigger=TriggerConfig(base_url="http://agents.test", cron_secret="test-secret"),
        external_apis=[],
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_run(db):
    def _make(agent=MaintenanceAgent.DB_COMPLETER, status=RunStatus.COMPLETED,
              created_at=NOW - timedelta(hours=1), **fields):
        fields.setdefault("triggered_by", TriggerSource.CRON.value)
        run = AgentRun(
            agent=MaintenanceAgent(agent).value,
            status=RunStatus(status).value,
            created_at=created_at,
            **fields,
        )
        db.add(run)
        db.commit()
        return run

    return _make


@pytest.fixture
def agent_requests():
    """Requests received by the fake agent endpoint"""
    return []


@pytest.fixture
def agent_status_code():
    return 200


@pytest.fixture
def http_client(agent_requests, agent_status_code):
    def handler(request):
        agent_requests.append(request)
        return httpx.Response(agent_status_code, json={"ok": agent_status_code < 400})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def orchestrator(ledger, config, http_client):
    return RetryOrchestrator(
        ledger,
        config,
        client=http_client,
        sleep=lambda seconds: None,
        rand=lambda: 0.0,
        clock=lambda: NOW,
    )
