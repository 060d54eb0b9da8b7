"""Shared fixtures for prqa tests."""

from __future__ import annotations

import json
import time
from collections import defaultdict, deque
from typing import Any

import pytest

from prqa.llm.engine import GenerationRequest, LLMEngine, LLMResponse
from prqa.llm.tracked_engine import TrackedLLMEngine
from prqa.llm.usage import UsageLedger
from prqa.models.pull_request import PullRequestInfo

# ── Fake model backend ───────────────────────────────────────────


class ScriptedEngine(LLMEngine):
    """Engine that answers each prompt (by ``metadata["prompt"]``) from a queue.

    Queued items are dicts (sent back as JSON), strings (sent verbatim) or
    exceptions (raised).  The last item of a queue is repeated once the
    queue runs dry.
    """

    def __init__(self, model: str = "fake-model") -> None:
        self._model = model
        self._queues: dict[str, deque[Any]] = defaultdict(deque)
        self._last: dict[str, Any] = {}
        self.calls: list[tuple[str, GenerationRequest]] = []

    @property
    def model_name(self) -> str:
        return self._model

    def script(self, prompt: str, *responses: Any) -> ScriptedEngine:
        self._queues[prompt].extend(responses)
        return self

    def calls_for(self, prompt: str) -> list[GenerationRequest]:
        return [request for name, request in self.calls if name == prompt]

    async def generate(self, request: GenerationRequest) -> LLMResponse:
        prompt = str(request.metadata.get("prompt", ""))
        self.calls.append((prompt, request))
        queue = self._queues.get(prompt)
        if queue:
            item = queue.popleft()
            self._last[prompt] = item
        elif prompt in self._last:
            item = self._last[prompt]
        else:
            raise AssertionError(f"No scripted response for prompt {prompt!r}")

        if isinstance(item, BaseException):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return LLMResponse(text=text, model=self._model, prompt_tokens=100, completion_tokens=50)


@pytest.fixture
def scripted() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def ledger() -> UsageLedger:
    return UsageLedger()


@pytest.fixture
def tracked(scripted: ScriptedEngine, ledger: UsageLedger) -> TrackedLLMEngine:
    """The scripted backend behind the usage-recording gateway layer."""
    return TrackedLLMEngine(scripted, ledger)


# ── Sample data ──────────────────────────────────────────────────

SAMPLE_DIFF = """\
diff --git a/src/auth/login.ts b/src/auth/login.ts
index 1111111..2222222 100644
--- a/src/auth/login.ts
+++ b/src/auth/login.ts
@@ -10,6 +10,12 @@ export async function login(user: string, password: string) {
   const session = await createSession(user);
+  if (!password) {
+    throw new Error("password required");
+  }
+  if (attempts(user) > 5) {
+    return lockAccount(user);
+  }
   return session;
 }
diff --git a/package.json b/package.json
index 3333333..4444444 100644
--- a/package.json
+++ b/package.json
@@ -5,7 +5,8 @@
   "dependencies": {
-    "express": "^4.18.0",
+    "express": "^5.0.0",
+    "jsonwebtoken": "^9.0.0",
     "zod": "^3.22.0"
   }
 }
"""


@pytest.fixture
def pull_request() -> PullRequestInfo:
    return PullRequestInfo(
        owner="acme",
        repo="shop",
        number=42,
        title="Lock accounts after repeated failed logins",
        diff=SAMPLE_DIFF,
        body="Adds account locking.",
        head_ref="feature/lockout",
    )


ANALYSIS_PAYLOAD: dict[str, Any] = {
    "summary": {
        "title": "Account lockout",
        "description": "Locks accounts after five failed attempts",
        "impactAreas": ["auth"],
        "changeType": "feature",
    },
    "overallRisk": "high",
    "risks": [
        {
            "level": "high",
            "area": "auth",
            "title": "Legit users locked out",
            "impact": "Customers cannot sign in",
            "mitigation": {"preventive": "Rate-limit per IP", "detective": "Alert on spikes"},
        },
        {"level": "low", "area": "ui", "title": "Error copy"},
    ],
    "scenarios": [
        {"title": "Login succeeds", "category": "happy_path", "priority": "high"},
        {"id": "TC-LOCK", "title": "Sixth failure locks", "priority": "critical"},
    ],
    "gaps": [{"title": "No UX message on lockout", "severity": "medium"}],
    "acceptanceCriteria": ["Account locks after 5 failures"],
}


@pytest.fixture
def analysis_payload() -> dict[str, Any]:
    return json.loads(json.dumps(ANALYSIS_PAYLOAD))


# ── Generated test sources ───────────────────────────────────────

VALID_SPEC = """\
import { test, expect } from "@playwright/test";
import { LoginPage } from "../pages/LoginPage";

test("TC001 login succeeds", async ({ page }) => {
  const login = new LoginPage(page);
  await page.goto("/login");
  await login.signIn("ada", "secret");
  await expect(page.getByText("Welcome")).toBeVisible();
});
"""

SPEC_MISSING_EXPECT = """\
import { test } from "@playwright/test";

test("TC-LOCK sixth failure locks", async ({ page }) => {
  await page.goto("/login");
  await expect(page.getByText("Locked")).toBeVisible();
});
"""

PAGE_OBJECT = """\
import type { Page } from "@playwright/test";

export class LoginPage {
  constructor(private readonly page: Page) {}

  async signIn(user: string, password: string): Promise<void> {
    await this.page.getByLabel("User").fill(user);
    await this.page.getByLabel("Password").fill(password);
    await this.page.getByRole("button", { name: "Sign in" }).click();
  }
}
"""

FIXTURE = """\
export const users = { ada: { name: "ada", password: "secret" } };
"""


@pytest.fixture
def sources() -> dict[str, str]:
    """Sample generated files keyed by kind."""
    return {
        "spec": VALID_SPEC,
        "spec_missing_expect": SPEC_MISSING_EXPECT,
        "page": PAGE_OBJECT,
        "fixture": FIXTURE,
    }


@pytest.fixture
def generation_payload() -> dict[str, Any]:
    """A generation answer: one page object, one fixture, one broken spec."""
    return {
        "files": [
            {"path": "pages/LoginPage.ts", "role": "page-object", "content": PAGE_OBJECT},
            {"path": "fixtures/users.ts", "role": "fixture", "content": FIXTURE},
            {"path": "tests/lockout.spec.ts", "role": "spec", "content": SPEC_MISSING_EXPECT},
        ],
        "dependencies": ["@playwright/test"],
    }


# ── Workspace ────────────────────────────────────────────────────


class MemoryWorkspace:
    """In-memory workspace that records every write and commit."""

    def __init__(self, files: dict[str, str] | None = None, fail_on: set[str] | None = None):
        self.files = dict(files or {})
        self.fail_on = fail_on or set()
        self.writes: list[tuple[str, str]] = []
        self.commits: list[tuple[list[str], str]] = []

    def read(self, path: str) -> str | None:
        return self.files.get(path)

    def write(self, path: str, content: str) -> None:
        if path in self.fail_on:
            raise OSError(f"disk full writing {path}")
        if content.startswith("slow"):
            time.sleep(0.05)
        self.files[path] = content
        self.writes.append((path, content))

    def commit(self, paths: list[str], message: str) -> str:
        self.commits.append((paths, message))
        return "abc1234"


@pytest.fixture
def workspace() -> MemoryWorkspace:
    return MemoryWorkspace()
