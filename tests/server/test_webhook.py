from typing import Any, Optional

from fastapi.testclient import TestClient

from fuzzci.app.cycle import CycleSnapshot
from fuzzci.server.app import create_app

class FakeOrchestrator:
    def __init__(self, branches: list[str]):
        self.branches = branches
        self.submitted: list[tuple[str, str, str, Optional[str]]] = []
        self.closed = False

    def configured(self, branch: str) -> bool:
        return branch in self.branches

    async def submit(self, branch: str, commit: str, url: str, run_id: Optional[str] = None) -> bool:
        if not self.configured(branch):
            return False
        self.submitted.append((branch, commit, url, run_id))
        return True

    def snapshots(self) -> dict[str, Optional[CycleSnapshot]]:
        return {branch: None for branch, *_ in self.submitted}

    async def shutdown(self) -> None:
        self.closed = True

def push(ref: str = "refs/heads/master", after: str = "0123456789abcdef", **kwargs: Any) -> dict[str, Any]:
    return {
        "ref": ref,
        "after": after,
        "repository": {"url": "https://github.com/example/node", "clone_url": "https://github.com/example/node.git"},
        "head_commit": {
            "id": after,
            "message": "Fix decoder\n\ndetails",
            "timestamp": "2024-01-02T03:04:05Z",
            "author": {"name": "Dev", "email": "dev@example.com", "username": "dev"},
        },
        **kwargs,
    }

def post(client: TestClient, event: str, body: Any):
    return client.post("/run", json=body, headers={"X-GitHub-Event": event})

def test_push_accepted():
    orchestrator = FakeOrchestrator(["master"])
    with TestClient(create_app(orchestrator)) as client:
        res = post(client, "push", push())
        assert res.status_code == 200
        assert res.json() == {"status": "accepted"}

        [(branch, commit, url, run_id)] = orchestrator.submitted
        assert (branch, commit, url) == ("master", "0123456789abcdef", "https://github.com/example/node")
        assert run_id is not None and run_id.startswith("Fix decoder - 01234 by dev at ")

        res = client.get("/status")
        assert res.status_code == 200
        assert res.json() == {"branches": {"master": None}}
    assert orchestrator.closed

def test_push_ignored():
    orchestrator = FakeOrchestrator(["master"])
    with TestClient(create_app(orchestrator)) as client:
        assert post(client, "push", push(ref="refs/heads/feature")).json() == {"status": "ignored"}
        assert post(client, "push", push(ref="refs/tags/v1.0")).json() == {"status": "ignored"}
        assert post(client, "push", push(deleted=True)).json() == {"status": "ignored"}
        assert post(client, "issues", {"action": "opened"}).json() == {"status": "ignored"}
    assert orchestrator.submitted == []

def test_ping():
    with TestClient(create_app(FakeOrchestrator([]))) as client:
        res = post(client, "ping", {"zen": "Keep it logically awesome."})
        assert res.status_code == 200
        assert res.json() == {"status": "pong"}

def test_malformed_push():
    orchestrator = FakeOrchestrator(["master"])
    with TestClient(create_app(orchestrator)) as client:
        assert post(client, "push", {"ref": "refs/heads/master"}).status_code == 422
        res = client.post("/run", content=b"not json", headers={"X-GitHub-Event": "push"})
        assert res.status_code == 422
    assert orchestrator.submitted == []
