# subset of the GitHub webhook payloads we consume

from typing import Literal, Optional

from pydantic import BaseModel

from fuzzci.app.cycle import CycleSnapshot
from fuzzci.app.orchestrator import make_run_id

BRANCH_REF_PREFIX = "refs/heads/"

class Author(BaseModel):
    name: str = ""
    email: str = ""
    username: str = ""

class Commit(BaseModel):
    id: str
    message: str = ""
    timestamp: str = ""
    author: Author = Author()

    def run_id(self) -> str:
        return make_run_id(self.id, self.message, self.author.username or self.author.name or None)

class Repository(BaseModel):
    url: str
    ssh_url: Optional[str] = None
    clone_url: Optional[str] = None

class PushEvent(BaseModel):
    ref: str
    after: Optional[str] = None
    deleted: bool = False
    repository: Repository
    commits: list[Commit] = []
    head_commit: Optional[Commit] = None

    @property
    def branch(self) -> Optional[str]:
        if not self.ref.startswith(BRANCH_REF_PREFIX):
            return None
        return self.ref.removeprefix(BRANCH_REF_PREFIX)

    @property
    def commit(self) -> Optional[Commit]:
        return self.head_commit or (self.commits[0] if self.commits else None)

    @property
    def commit_id(self) -> Optional[str]:
        if self.after and self.after.strip("0"):
            return self.after
        return self.commit.id if self.commit else None

    def run_id(self) -> str:
        if (commit := self.commit) is not None:
            return commit.run_id()
        return "no commit"

class PingEvent(BaseModel):
    zen: str = ""

class RunResponse(BaseModel):
    status: Literal["pong", "accepted", "ignored"]

class StatusResponse(BaseModel):
    branches: dict[str, Optional[CycleSnapshot]]
