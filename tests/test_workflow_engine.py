"""
Unit tests for the run orchestrator.

Runs execute against FakePages with a fast retry policy so retries and
backoff are exercised without real waiting.
"""

import tempfile
import unittest
from pathlib import Path

from login_orchestrator import LoginOrchestrator
from persistence import JSONRecordStore
from retry_policy import RetryPolicy
from run_stream import EVENT_END, EVENT_LOG, EVENT_STATUS
from session_vault import SessionVault
from workflow_engine import RunOrchestrator, interpolate, substitute_action
from workflow_models import Action, DomainScopeConfig, LogicSpec, RunStatus, Workflow

from fakes import FakePage, PageFactory, fixture

FAST = RetryPolicy(max_attempts=3, base_delay=0.01, backoff=1.0, max_delay=0.01, jitter=False)

LOGIN_URL = "https://app.example.com/login"
HOME_URL = "https://app.example.com/home"


def search_workflow(**overrides):
    data = {
        "id": "search",
        "name": "Search invoices",
        "actions": [
            Action(id="nav", type="navigate", selector="body", url="https://app.example.com/", order=0),
            Action(id="query", type="type", selector="#q", value="{{month}}", order=1),
            Action(id="go", type="click", selector="#go", order=2),
            Action(id="enter", type="key_press", selector="body", value="Enter", order=3),
        ],
        "variables": [{"name": "month", "required": True}],
    }
    data.update(overrides)
    return Workflow(**data)


def app_page():
    return FakePage(counts={"#q": 1, "#go": 1})


def messages(run):
    return [log.message for log in run.logs]


class TestInterpolation(unittest.TestCase):
    """Test variable substitution."""

    def test_both_template_forms(self):
        """{{name}} and {{input.name}} are replaced; unknown names stay."""
        inputs = {"month": "2025-01"}
        self.assertEqual(interpolate("m={{month}}&n={{ input.month }}&x={{other}}", inputs),
                         "m=2025-01&n=2025-01&x={{other}}")

    def test_substitute_action(self):
        """Value, url, selector and metadata strings are substituted."""
        action = Action(type="navigate", selector="body", url="https://x.test/{{id}}", order=0,
                        metadata={"note": "for {{id}}"})
        resolved = substitute_action(action, {"id": "42"})
        self.assertEqual(resolved.url, "https://x.test/42")
        self.assertEqual(resolved.metadata["note"], "for 42")
        self.assertEqual(action.url, "https://x.test/{{id}}")


class TestRunOrchestrator(unittest.IsolatedAsyncioTestCase):
    """Test run execution, retries, failures and cancellation."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = JSONRecordStore(self.tmp.name)
        self.factory = PageFactory(app_page)
        self.orchestrator = self.make_orchestrator()

    def tearDown(self):
        self.tmp.cleanup()

    def make_orchestrator(self, **overrides):
        options = {
            "page_factory": self.factory,
            "record_store": self.store,
            "retry_policy": FAST,
            "step_delay": 0,
            "step_timeout_ms": 100,
            "screenshot_dir": self.tmp.name,
        }
        options.update(overrides)
        return RunOrchestrator(**options)

    async def test_successful_run(self):
        """All steps run in order with variables substituted."""
        run = await self.orchestrator.execute(search_workflow(), {"month": "2025-01"})

        self.assertEqual(run.status, RunStatus.SUCCESS)
        self.assertEqual(run.result["steps_completed"], 4)
        page = self.factory.created[0]
        self.assertEqual(page.calls[0], ("navigate", "https://app.example.com/"))
        self.assertIn(("fill", "#q", "2025-01"), page.calls)
        self.assertIn(("click", "#go"), page.calls)
        self.assertIn(("press", "Enter"), page.calls)
        self.assertTrue(page.is_closed())
        self.assertEqual(self.store.get_run(run.id).status, RunStatus.SUCCESS)
        self.assertEqual(messages(run)[-1], "Workflow finished: success")

    async def test_actions_loaded_from_store(self):
        """Without inline actions the recorded ones are used."""
        self.store.batch_create_actions("search", search_workflow().actions)
        run = await self.orchestrator.execute(search_workflow(actions=None), {"month": "2025-02"})
        self.assertEqual(run.status, RunStatus.SUCCESS)
        self.assertIn(("fill", "#q", "2025-02"), self.factory.created[0].calls)

    async def test_start_url_opened_first(self):
        """start_url is loaded when the first action is not a navigation."""
        workflow = Workflow(id="wf", start_url="https://app.example.com/start", actions=[
            Action(type="click", selector="#go", order=0),
        ])
        run = await self.orchestrator.execute(workflow)
        self.assertEqual(run.status, RunStatus.SUCCESS)
        self.assertEqual(self.factory.created[0].calls[0], ("navigate", "https://app.example.com/start"))

    async def test_retry_then_success(self):
        """A flaky step is retried with WARN log entries and then succeeds."""
        def flaky_page():
            page = app_page()
            page.failures["#go"] = 2
            return page

        orchestrator = self.make_orchestrator(page_factory=PageFactory(flaky_page))
        run = await orchestrator.execute(search_workflow(), {"month": "2025-01"})

        self.assertEqual(run.status, RunStatus.SUCCESS)
        retries = [log for log in run.logs if log.metadata.get("event") == "retry"]
        self.assertEqual(len(retries), 2)
        self.assertTrue(all(log.level.value == "warn" for log in retries))
        self.assertEqual(retries[0].action_id, "go")

    async def test_step_failure(self):
        """A step that never resolves fails the run with its error code."""
        workflow = search_workflow()
        workflow.actions[2] = Action(id="go", type="click", selector="#missing", order=2)
        run = await self.orchestrator.execute(workflow, {"month": "2025-01"})

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(run.error_code, "SELECTOR_RESOLUTION_FAILED")
        self.assertEqual(run.result["steps_completed"], 2)
        self.assertTrue(any(m.startswith("ERROR at step 2:") for m in messages(run)))
        retries = [log for log in run.logs if log.metadata.get("event") == "retry"]
        self.assertEqual(len(retries), 2)

    async def test_action_retries_override(self):
        """A per-action retry budget replaces the default."""
        def flaky_page():
            page = app_page()
            page.failures["#go"] = 1
            return page

        workflow = search_workflow()
        workflow.actions[2] = Action(id="go", type="click", selector="#go", order=2, retries=1)
        orchestrator = self.make_orchestrator(page_factory=PageFactory(flaky_page))
        run = await orchestrator.execute(workflow, {"month": "2025-01"})
        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(run.error_code, "STEP_FAILED")

    async def test_logic_spec_retries_and_continue_on_error(self):
        """LogicSpec sets the retry budget and can tolerate failing steps."""
        workflow = search_workflow()
        workflow.actions[2] = Action(id="go", type="click", selector="#missing", order=2)
        spec = LogicSpec(max_retries=1, continue_on_error=["go"])
        run = await self.orchestrator.execute(workflow, {"month": "2025-01"}, logic_spec=spec)

        self.assertEqual(run.status, RunStatus.SUCCESS)
        self.assertEqual(run.result["tolerated_failures"], ["go"])
        self.assertEqual(run.result["steps_completed"], 3)
        self.assertFalse(any(log.metadata.get("event") == "retry" for log in run.logs))

    async def test_blocked_navigation_not_retried(self):
        """Navigating outside the domain scope fails at once."""
        workflow = search_workflow(
            domain_scope=DomainScopeConfig(base_domain="example.com"),
            actions=[Action(type="navigate", selector="body", url="https://evil.test/", order=0)],
        )
        run = await self.orchestrator.execute(workflow, {"month": "2025-01"})

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(run.error_code, "SCOPE_BLOCKED")
        self.assertEqual(self.factory.created[0].actions("navigate"), [])
        self.assertFalse(any(log.metadata.get("event") == "retry" for log in run.logs))

    async def test_navigation_failure_retried(self):
        """An unreachable page is retried, then fails with NAVIGATION_FAILED."""
        def down_page():
            page = app_page()
            page.navigation_errors["https://app.example.com/"] = ConnectionError("refused")
            return page

        orchestrator = self.make_orchestrator(page_factory=PageFactory(down_page))
        run = await orchestrator.execute(search_workflow(), {"month": "2025-01"})

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(run.error_code, "NAVIGATION_FAILED")
        self.assertEqual(len(orchestrator.page_factory.created[0].actions("navigate")), 3)

    async def test_missing_required_variable(self):
        """Unresolvable variables fail the run before any page is opened."""
        run = await self.orchestrator.execute(search_workflow())
        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertIn("month", run.error)
        self.assertEqual(self.factory.created, [])

    async def test_screenshot_action(self):
        """Screenshot steps write a file under the run's directory."""
        workflow = Workflow(id="wf", actions=[Action(id="shot", type="screenshot", selector="body", order=0)])
        run = await self.orchestrator.execute(workflow)
        self.assertEqual(run.status, RunStatus.SUCCESS)
        self.assertTrue((Path(self.tmp.name) / run.id / "0000_shot.png").exists())

    async def test_stream_events(self):
        """Subscribers see status, ordered logs and a final end event."""
        run = await self.orchestrator.start_run(search_workflow(), {"month": "2025-01"})
        self.assertEqual(run.status, RunStatus.PENDING)
        events = [event async for event in self.orchestrator.subscribe(run.id)]

        self.assertEqual(events[0].event, EVENT_STATUS)
        self.assertEqual(events[0].data["status"], "RUNNING")
        self.assertTrue(all(e.event == EVENT_LOG for e in events[1:-1]))
        self.assertEqual(events[-1].event, EVENT_END)
        self.assertEqual(events[-1].data["status"], "SUCCESS")
        self.assertEqual([e.data["message"] for e in events[1:-1]], messages(run))

    async def test_stop_cancels_run(self):
        """Stopping a run ends it FAILED with cancelled set and an end event."""
        orchestrator = self.make_orchestrator(step_delay=5)
        run = await orchestrator.start_run(search_workflow(), {"month": "2025-01"})
        sub = orchestrator.subscribe(run.id)

        events = []
        async for event in sub:
            events.append(event)
            if event.event == EVENT_LOG and event.data["metadata"].get("event") == "step_end":
                self.assertTrue(await orchestrator.stop(run.id))

        finished = await orchestrator.wait(run.id)
        self.assertEqual(finished.status, RunStatus.FAILED)
        self.assertTrue(finished.cancelled)
        self.assertEqual(finished.error_code, "RUN_CANCELLED")
        self.assertEqual(finished.result["steps_completed"], 1)
        self.assertEqual(events[-1].event, EVENT_END)
        self.assertTrue(events[-1].data["cancelled"])
        self.assertTrue(self.factory.created[0].is_closed())
        self.assertFalse(await orchestrator.stop(run.id))
        self.assertFalse(await orchestrator.stop("run_unknown"))

    async def test_list_and_get_runs(self):
        """Runs are listed per workflow and fetched from the store when not in memory."""
        run = await self.orchestrator.execute(search_workflow(), {"month": "2025-01"})
        self.assertEqual([r.id for r in self.orchestrator.list_runs("search")], [run.id])
        self.assertEqual(self.orchestrator.list_runs("other"), [])
        fresh = self.make_orchestrator()
        self.assertEqual(fresh.get_run(run.id).status, RunStatus.SUCCESS)
        self.assertFalse(fresh.tracks(run.id))

    async def test_finished_runs_are_bounded(self):
        """Only the newest finished runs stay in memory; older ones are read back from the store."""
        orchestrator = self.make_orchestrator(max_finished_runs=2)
        runs = [await orchestrator.execute(search_workflow(), {"month": "2025-01"}) for _ in range(3)]

        self.assertFalse(orchestrator.tracks(runs[0].id))
        self.assertTrue(orchestrator.tracks(runs[2].id))
        self.assertEqual(len(orchestrator._runs), 2)
        self.assertEqual(orchestrator._cancel, {})
        self.assertEqual(orchestrator.get_run(runs[0].id).status, RunStatus.SUCCESS)
        self.assertEqual({r.id for r in orchestrator.list_runs("search")}, {runs[1].id, runs[2].id})


class TestAuthenticatedRuns(unittest.IsolatedAsyncioTestCase):
    """Test runs that require a login first."""

    def login_page(self, submit_target=HOME_URL):
        page = FakePage(pages={
            LOGIN_URL: fixture("login_traditional.html"),
            HOME_URL: fixture("dashboard.html"),
        }, counts={"#pw-confirm": 1}, cookies=[{"name": "sid", "value": "abc", "expires": -1}])
        page.transitions['[id="submit"]'] = submit_target
        return page

    def workflow(self):
        return Workflow(
            id="secure",
            requires_login=True,
            credential={"username": "jane@example.com", "password": "s3cret", "url": LOGIN_URL},
            actions=[
                Action(type="navigate", selector="body", url=HOME_URL, order=0),
                Action(type="type", selector="#pw-confirm", value="{{password}}", order=1),
            ],
        )

    async def test_login_then_steps(self):
        """The run logs in, then fills the password placeholder without logging it."""
        factory = PageFactory(self.login_page)
        login = LoginOrchestrator(SessionVault(passphrase="k"), factory, login_timeout=5)
        orchestrator = RunOrchestrator(page_factory=factory, login=login, retry_policy=FAST,
                                       step_delay=0, step_timeout_ms=100)
        run = await orchestrator.execute(self.workflow())

        self.assertEqual(run.status, RunStatus.SUCCESS)
        self.assertEqual(login.login_count, 1)
        self.assertIn(("fill", "#pw-confirm", "s3cret"), factory.created[0].calls)
        self.assertFalse(any("s3cret" in m for m in messages(run)))

        await orchestrator.execute(self.workflow())
        self.assertEqual(login.login_count, 1)
        self.assertEqual(login._pages, [])
        self.assertTrue(all(page.is_closed() for page in factory.created))

    async def test_rejected_login(self):
        """Rejected credentials fail the run with LOGIN_FAILED and are not retried."""
        factory = PageFactory(lambda: self.login_page(submit_target=LOGIN_URL))
        login = LoginOrchestrator(SessionVault(passphrase="k"), factory, login_timeout=5)
        orchestrator = RunOrchestrator(page_factory=factory, login=login, retry_policy=FAST, step_delay=0)
        run = await orchestrator.execute(self.workflow())

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(run.error_code, "LOGIN_FAILED")
        self.assertEqual(login.login_count, 1)

    async def test_unreachable_login_retried(self):
        """A retryable login failure is attempted again up to the budget."""
        def unreachable():
            page = self.login_page()
            page.navigation_errors[LOGIN_URL] = ConnectionError("refused")
            return page

        factory = PageFactory(unreachable)
        login = LoginOrchestrator(SessionVault(passphrase="k"), factory, login_timeout=5)
        orchestrator = RunOrchestrator(page_factory=factory, login=login, retry_policy=FAST, step_delay=0)
        run = await orchestrator.execute(self.workflow())

        self.assertEqual(run.status, RunStatus.FAILED)
        self.assertEqual(login.login_count, 3)
        self.assertTrue(all(page.is_closed() for page in factory.created))


if __name__ == '__main__':
    unittest.main()
