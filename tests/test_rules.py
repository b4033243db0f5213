"""Tests for job and workflow rule evaluation."""

from ciplan.context import PipelineContext
from ciplan.dag import plan_pipeline
from ciplan.dsl import define_pipeline, job, rule, sh
from ciplan.model import NEVER, ON_SUCCESS, WHEN_MANUAL
from ciplan.rules import changes_match, evaluate_rules, evaluate_workflow

MAIN = PipelineContext(branch="main", default_branch="main", author="Dev <dev@example.com>")
FEATURE = PipelineContext(branch="feature/login", default_branch="main", author="Dev <dev@example.com>")
BOT = PipelineContext(branch="main", default_branch="main", author="semantic-release-bot <bot@example.com>")

SKIP_BOT = rule("$CI_COMMIT_AUTHOR =~ /semantic-release/", when="never")


def _job(name="j", **kwargs):
    return job(name, sh("run", "true"), **kwargs)


class TestEvaluateRules:
    def test_no_rules_uses_job_when(self) -> None:
        assert evaluate_rules(_job(), MAIN).when == ON_SUCCESS
        decision = evaluate_rules(_job(when="manual"), MAIN)
        assert decision.manual
        assert decision.allow_failure

    def test_first_matching_rule_wins(self) -> None:
        j = _job(rules=[
            rule('$CI_COMMIT_BRANCH == "main"', when="manual"),
            rule("$CI_COMMIT_BRANCH"),
        ])
        decision = evaluate_rules(j, MAIN)
        assert decision.when == WHEN_MANUAL
        assert decision.matched == 0

        decision = evaluate_rules(j, FEATURE)
        assert decision.when == ON_SUCCESS
        assert decision.matched == 1

    def test_no_matching_rule_means_never(self) -> None:
        j = _job(rules=[rule("$CI_COMMIT_TAG")])
        decision = evaluate_rules(j, MAIN)
        assert decision.when == NEVER
        assert not decision.included
        assert decision.matched is None

    def test_release_bot_is_skipped_regardless_of_later_rules(self) -> None:
        j = _job(rules=[SKIP_BOT, rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH"), rule()])
        assert not evaluate_rules(j, BOT).included
        assert evaluate_rules(j, MAIN).included

    def test_default_branch_rule(self) -> None:
        j = _job("build_image", rules=[rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH")])
        assert evaluate_rules(j, MAIN).included
        assert not evaluate_rules(j, FEATURE).included

    def test_rule_variables_are_scoped_to_the_job(self) -> None:
        a = _job("a", variables={"SUITE": "smoke", "KEEP": "1"}, rules=[rule(variables={"SUITE": "full"})])
        b = _job("b")
        decision_a = evaluate_rules(a, MAIN)
        decision_b = evaluate_rules(b, MAIN)
        assert decision_a.variables == {"SUITE": "full", "KEEP": "1"}
        assert "SUITE" not in decision_b.variables
        assert "SUITE" not in MAIN.variables

    def test_rule_variables_do_not_affect_their_own_predicate(self) -> None:
        j = _job(rules=[
            rule(variables={"X": "1"}, if_='$X == "1"'),
            rule(when="manual"),
        ])
        assert evaluate_rules(j, MAIN).manual

    def test_pipeline_and_job_variables_are_visible_to_rules(self) -> None:
        j = _job(variables={"DEPLOY": "yes"}, rules=[rule('$DEPLOY == "yes" && $REGION == "eu"')])
        assert evaluate_rules(j, MAIN, {"REGION": "eu"}).included
        assert not evaluate_rules(j, MAIN, {"REGION": "us"}).included

    def test_manual_allow_failure_defaults(self) -> None:
        assert evaluate_rules(_job(rules=[rule(when="manual")]), MAIN).allow_failure
        assert not evaluate_rules(_job(rules=[rule(when="manual", allow_failure=False)]), MAIN).allow_failure
        assert not evaluate_rules(_job(allow_failure=False, rules=[rule(when="manual")]), MAIN).allow_failure
        assert evaluate_rules(_job(allow_failure=True), MAIN).allow_failure
        assert not evaluate_rules(_job(), MAIN).allow_failure

    def test_changes(self) -> None:
        j = _job(rules=[rule(changes=["docs/*"])])
        touched_docs = PipelineContext(branch="main", changed_files=("docs/index.md",))
        touched_src = PipelineContext(branch="main", changed_files=("src/app.py",))
        assert evaluate_rules(j, touched_docs).included
        assert not evaluate_rules(j, touched_src).included
        # unknown change set: cannot rule the job out
        assert evaluate_rules(j, MAIN).included


def test_changes_match() -> None:
    assert changes_match(None, ["a.py"])
    assert changes_match(["*.py"], None)
    assert changes_match(["src/*.py"], ["README.md", "src/app.py"])
    assert not changes_match(["src/*.py"], [])


class TestWorkflowRules:
    def test_no_workflow_rules_always_creates(self) -> None:
        assert evaluate_workflow(None, MAIN).included

    def test_never_rule_prevents_the_pipeline(self) -> None:
        decision = evaluate_workflow([SKIP_BOT, rule()], BOT)
        assert not decision.included

    def test_no_match_prevents_the_pipeline(self) -> None:
        assert not evaluate_workflow([rule("$CI_COMMIT_TAG")], MAIN).included

    def test_matching_rule_variables_become_pipeline_variables(self) -> None:
        decision = evaluate_workflow([rule(variables={"ENV": "prod"})], MAIN, {"ENV": "dev", "A": "1"})
        assert decision.variables == {"ENV": "prod", "A": "1"}

    def test_workflow_variables_reach_job_rules(self) -> None:
        pipeline = define_pipeline(
            _job("deploy", rules=[rule('$ENV == "prod"')]),
            workflow_rules=[rule("$CI_COMMIT_BRANCH == $CI_DEFAULT_BRANCH", variables={"ENV": "prod"}), rule()],
        )
        assert "deploy" in plan_pipeline(pipeline, MAIN).jobs
        assert "deploy" in plan_pipeline(pipeline, FEATURE).excluded

    def test_skipped_pipeline_has_no_jobs(self) -> None:
        pipeline = define_pipeline(_job("a"), workflow_rules=[SKIP_BOT, rule()])
        plan = plan_pipeline(pipeline, BOT)
        assert not plan.created
        assert plan.jobs == {}
