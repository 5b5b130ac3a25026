"""
Tests for team questions: posting, answering with knowledge capture,
follow-ups, rejection and replacement.
"""
import uuid

import pytest

from ravenloom.errors import (
    InvalidParent,
    InvalidQuestionState,
    LLMUnavailable,
    NotAnswered,
    NotFound,
    PermissionDenied,
    QuestionBudgetExhausted,
)
from ravenloom.knowledge.types import ExtractedFact, Resolution
from ravenloom.llm.base import NextStep
from ravenloom.models import Fact, ObjectiveStatus, QuestionStatus, TeamQuestion
from ravenloom.services.ask_engine import AskResponse
from ravenloom.services.escalation import EscalationManager
from ravenloom.services.learning_objectives import LearningObjectiveScheduler
from ravenloom.settings import Settings
from ravenloom.stores import FactStore, ScopeTree

ASKER_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
EXPERT_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
LEAD_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")


@pytest.fixture
def two_question_settings():
    return Settings(_env_file=None, database_url_override="sqlite://", initial_question_count=2)


@pytest.fixture
def manager(db, fake_llm, two_question_settings):
    return EscalationManager(db, fake_llm, two_question_settings)


@pytest.fixture
def scheduler(db, fake_llm, two_question_settings):
    return LearningObjectiveScheduler(db, fake_llm, two_question_settings)


@pytest.fixture
def objective(scheduler, team_root, project_scope):
    return scheduler.create_objective(
        team_root.team_id,
        created_by=LEAD_ID,
        title="Understand billing",
        description="How invoices are produced",
        scope_id=project_scope.id,
        max_questions=5,
    )


@pytest.fixture
def private_scope(db, project_scope):
    return ScopeTree(db).get_or_create_private_scope(project_scope.team_id, ASKER_ID, project_scope.id)


def _post(manager, scope, text="Who owns the billing service?", **kwargs):
    return manager.post_question(scope.team_id, ASKER_ID, text, scope_id=scope.id, **kwargs)


def _answered(manager, scope, answer="Dana's team owns it"):
    question = _post(manager, scope)
    manager.answer(question.id, EXPERT_ID, answer)
    return question


class TestPostQuestion:
    def test_post_open_question_with_unique_assignees(self, manager, project_scope):
        question = _post(manager, project_scope, assignee_ids=[EXPERT_ID, LEAD_ID, EXPERT_ID])

        assert question.status == QuestionStatus.open
        assert question.asked_by == ASKER_ID
        assert question.asked_by_raven is False
        assignees = [a.user_id for a in manager.get_assignees(question.id)]
        assert sorted(assignees) == sorted([EXPERT_ID, LEAD_ID])

    def test_scope_in_other_team_is_rejected(self, manager, project_scope):
        with pytest.raises(InvalidParent):
            manager.post_question(uuid.uuid4(), ASKER_ID, "Cross-team?", scope_id=project_scope.id)

    def test_private_scope_of_other_user_is_denied(self, db, manager, team_root, project_scope):
        private = ScopeTree(db).get_or_create_private_scope(team_root.team_id, EXPERT_ID, project_scope.id)

        with pytest.raises(PermissionDenied):
            _post(manager, private)

    def test_unknown_parent_question(self, manager, project_scope):
        with pytest.raises(NotFound):
            _post(manager, project_scope, parent_question_id=uuid.uuid4())

    def test_escalate_ask_keeps_raven_attempt(self, manager, project_scope):
        response = AskResponse(answer="Maybe the payments team?", confidence=0.3, should_escalate=True)

        question = manager.escalate_ask(
            project_scope.id, "Who owns billing?", ASKER_ID, response, assignee_ids=[EXPERT_ID]
        )

        assert question.ai_answer == "Maybe the payments team?"
        assert question.ai_confidence == 0.3
        assert question.scope_id == project_scope.id
        assert [a.user_id for a in question.assignees] == [EXPERT_ID]

    def test_list_puts_open_questions_first(self, manager, project_scope):
        answered = _answered(manager, project_scope)
        open_question = _post(manager, project_scope, "Where are invoices stored?", assignee_ids=[EXPERT_ID])

        listed = manager.list_questions(project_scope.team_id, ASKER_ID)

        assert [q.id for q in listed] == [open_question.id, answered.id]
        assert [q.id for q in manager.list_questions(project_scope.team_id, ASKER_ID, assigned_to=EXPERT_ID)] == [
            open_question.id
        ]
        answered_only = manager.list_questions(project_scope.team_id, ASKER_ID, status=QuestionStatus.answered)
        assert [q.id for q in answered_only] == [answered.id]
        assert manager.open_question_count(project_scope.team_id) == 1

    def test_assign_replaces_assignees(self, manager, project_scope):
        question = _post(manager, project_scope, assignee_ids=[EXPERT_ID])

        updated = manager.assign(question.id, [LEAD_ID, LEAD_ID], assigned_by=ASKER_ID)

        assert [a.user_id for a in updated.assignees] == [LEAD_ID]


class TestPrivateQuestions:
    def test_list_hides_other_users_private_questions(self, manager, project_scope, private_scope):
        public = _post(manager, project_scope)
        private = _post(manager, private_scope, "What do I still need to learn about billing?")

        mine = manager.list_questions(project_scope.team_id, ASKER_ID)
        theirs = manager.list_questions(project_scope.team_id, EXPERT_ID)

        assert {q.id for q in mine} == {public.id, private.id}
        assert [q.id for q in theirs] == [public.id]

    def test_list_keeps_unscoped_questions(self, manager, project_scope):
        question = manager.post_question(project_scope.team_id, ASKER_ID, "Who runs the standup?")

        assert [q.id for q in manager.list_questions(project_scope.team_id, EXPERT_ID)] == [question.id]

    def test_outsider_cannot_read_or_change_private_question(self, manager, fake_llm, private_scope):
        question = _post(manager, private_scope, asked_by_raven=True)

        with pytest.raises(PermissionDenied):
            manager.require_visible_question(question.id, EXPERT_ID)
        with pytest.raises(PermissionDenied):
            manager.get_follow_ups(question.id, EXPERT_ID)
        with pytest.raises(PermissionDenied):
            manager.answer(question.id, EXPERT_ID, "Dana's team owns it")
        with pytest.raises(PermissionDenied):
            manager.ask_follow_up(question.id, EXPERT_ID)
        with pytest.raises(PermissionDenied):
            manager.reject(question.id, EXPERT_ID, reason="not mine")
        with pytest.raises(PermissionDenied):
            manager.close(question.id, EXPERT_ID)
        with pytest.raises(PermissionDenied):
            manager.assign(question.id, [EXPERT_ID], assigned_by=EXPERT_ID)

        assert manager.get_question(question.id).status == QuestionStatus.open
        assert fake_llm.calls_to("generate_follow_up") == []

    def test_owner_works_their_private_question(self, manager, private_scope):
        question = _post(manager, private_scope)

        assert manager.require_visible_question(question.id, ASKER_ID).id == question.id
        outcome = manager.answer(question.id, ASKER_ID, "Invoices are produced monthly")

        assert outcome.question.status == QuestionStatus.answered
        assert manager.get_follow_ups(question.id, ASKER_ID) == []
        assert manager.close(question.id, ASKER_ID).status == QuestionStatus.closed


class TestAnswerAndClose:
    def test_answer_then_close(self, manager, project_scope):
        question = _post(manager, project_scope)

        outcome = manager.answer(question.id, EXPERT_ID, "  Dana's team owns it ")

        assert outcome.question.status == QuestionStatus.answered
        assert outcome.question.answer == "Dana's team owns it"
        assert outcome.question.answered_by == EXPERT_ID
        assert outcome.knowledge_capture.status == "skipped"
        with pytest.raises(InvalidQuestionState):
            manager.answer(question.id, EXPERT_ID, "Again")

        closed = manager.close(question.id, ASKER_ID)
        assert closed.status == QuestionStatus.closed
        with pytest.raises(InvalidQuestionState):
            manager.close(question.id, ASKER_ID)

    def test_open_question_can_be_closed_directly(self, manager, project_scope):
        question = _post(manager, project_scope)

        assert manager.close(question.id, ASKER_ID).status == QuestionStatus.closed
        with pytest.raises(InvalidQuestionState):
            manager.answer(question.id, EXPERT_ID, "Too late")

    def test_answer_is_captured_as_knowledge(self, db, manager, fake_llm, project_scope):
        question = _post(manager, project_scope)

        outcome = manager.answer(question.id, EXPERT_ID, "Dana's team owns it", add_to_knowledge=True)

        assert outcome.knowledge_capture.status == "captured"
        assert outcome.knowledge_capture.facts_created == 1
        statement = fake_llm.calls_to("extract_facts")[0][0]
        assert statement == "Q: Who owns the billing service?\nA: Dana's team owns it"
        fact = db.query(Fact).one()
        assert fact.scope_id == project_scope.id
        assert fact.created_by == EXPERT_ID

    def test_question_without_scope_is_captured_in_team_root(self, db, manager, team_root):
        question = manager.post_question(team_root.team_id, ASKER_ID, "Where is the office?")

        outcome = manager.answer(question.id, EXPERT_ID, "Berlin", add_to_knowledge=True)

        assert outcome.knowledge_capture.status == "captured"
        assert db.query(Fact).one().scope_id == team_root.id

    def test_contradicting_answer_needs_review(self, db, manager, fake_llm, project_scope):
        owner = {
            "content": "Billing is owned by the payments team",
            "entity_name": "billing service",
            "attribute": "owner",
            "value": "payments team",
        }
        FactStore(db).materialize(project_scope, [(ExtractedFact(**owner), Resolution.create())], LEAD_ID)
        db.commit()
        question = _post(manager, project_scope)
        fake_llm.script_extraction(
            "Q: Who owns the billing service?\nA: Dana's team owns it",
            dict(owner, content="Billing is owned by Dana's team", value="Dana's team"),
        )

        outcome = manager.answer(question.id, EXPERT_ID, "Dana's team owns it", add_to_knowledge=True)

        capture = outcome.knowledge_capture
        assert capture.status == "needs_review"
        assert capture.preview_id is not None
        assert capture.error.code == "unresolved_contradiction"
        assert outcome.question.status == QuestionStatus.answered
        assert db.query(Fact).count() == 1

    def test_capture_failure_keeps_the_answer(self, db, manager, fake_llm, project_scope):
        question = _post(manager, project_scope)
        fake_llm.failures["extract_facts"] = LLMUnavailable("model timed out")

        outcome = manager.answer(question.id, EXPERT_ID, "Dana's team owns it", add_to_knowledge=True)

        assert outcome.knowledge_capture.status == "failed"
        assert outcome.knowledge_capture.error.code == "llm_unavailable"
        assert manager.get_question(question.id).status == QuestionStatus.answered
        assert db.query(Fact).count() == 0


class TestFollowUps:
    def test_follow_up_requires_an_answer(self, manager, fake_llm, project_scope):
        question = _post(manager, project_scope)

        with pytest.raises(NotAnswered):
            manager.ask_follow_up(question.id, ASKER_ID)
        assert fake_llm.calls_to("generate_follow_up") == []

    def test_follow_up_is_a_raven_child_question(self, manager, fake_llm, project_scope):
        question = _answered(manager, project_scope)
        fake_llm.follow_ups.append("Who is Dana's backup?")

        child = manager.ask_follow_up(question.id, ASKER_ID)

        assert child.parent_question_id == question.id
        assert child.asked_by_raven is True
        assert child.scope_id == project_scope.id
        assert child.question == "Who is Dana's backup?"
        assert [q.id for q in manager.get_follow_ups(question.id, ASKER_ID)] == [child.id]
        _, answer, context = fake_llm.calls_to("generate_follow_up")[0]
        assert answer == "Dana's team owns it"
        assert "Knowledge area: Platform" in context

    def test_follow_up_under_objective_draws_on_budget(self, db, manager, scheduler, objective):
        question = scheduler.objective_questions(objective.id)[0]
        manager.answer(question.id, EXPERT_ID, "Monthly, on the first")
        asked_before = scheduler.require_objective(objective.id).questions_asked

        child = manager.ask_follow_up(question.id, ASKER_ID)

        assert child.learning_objective_id == objective.id
        assert child.asked_by == LEAD_ID
        assert scheduler.require_objective(objective.id).questions_asked == asked_before + 1

    def test_follow_up_with_exhausted_budget(self, db, manager, scheduler, fake_llm, team_root):
        spent = scheduler.create_objective(team_root.team_id, LEAD_ID, "Spent", max_questions=2)
        question = scheduler.objective_questions(spent.id)[0]
        manager.answer(question.id, EXPERT_ID, "An answer")

        with pytest.raises(QuestionBudgetExhausted):
            manager.ask_follow_up(question.id, ASKER_ID)
        assert fake_llm.calls_to("generate_follow_up") == []


class TestReject:
    def test_only_open_raven_questions_can_be_rejected(self, manager, project_scope):
        human = _post(manager, project_scope)

        with pytest.raises(InvalidQuestionState):
            manager.reject(human.id, EXPERT_ID, "Not relevant")

    def test_reject_creates_top_level_replacement(self, db, manager, scheduler, fake_llm, objective):
        assert objective.questions_asked == 2
        rejected = scheduler.objective_questions(objective.id)[0]
        fake_llm.replacements.append("Which system sends invoices?")

        outcome = manager.reject(rejected.id, EXPERT_ID, "Too vague")

        assert outcome.question.status == QuestionStatus.closed
        assert outcome.question.rejection_reason == "Too vague"
        replacement = outcome.replacement
        assert replacement.question == "Which system sends invoices?"
        assert replacement.parent_question_id is None
        assert replacement.learning_objective_id == objective.id
        assert replacement.asked_by_raven is True
        assert replacement.status == QuestionStatus.open
        assert scheduler.require_objective(objective.id).questions_asked == 3

        _, rejected_text, reason, previously_rejected, _ = fake_llm.calls_to("generate_replacement")[0]
        assert rejected_text == rejected.question
        assert reason == "Too vague"
        assert previously_rejected == []

        with pytest.raises(InvalidQuestionState):
            manager.reject(rejected.id, EXPERT_ID, "Again")

    def test_rejection_without_reason_is_still_recorded(self, manager, scheduler, objective):
        rejected = scheduler.objective_questions(objective.id)[0]

        outcome = manager.reject(rejected.id, EXPERT_ID)

        assert outcome.question.rejection_reason == ""
        assert outcome.replacement is not None

    def test_no_replacement_when_budget_is_spent(self, manager, scheduler, fake_llm, team_root):
        spent = scheduler.create_objective(team_root.team_id, LEAD_ID, "Spent", max_questions=2)
        rejected = scheduler.objective_questions(spent.id)[0]

        outcome = manager.reject(rejected.id, EXPERT_ID, "Off topic")

        assert outcome.replacement is None
        assert outcome.replacement_error is None
        assert fake_llm.calls_to("generate_replacement") == []
        assert scheduler.require_objective(spent.id).questions_asked == 2

    def test_replacement_failure_is_reported(self, manager, scheduler, fake_llm, objective):
        rejected = scheduler.objective_questions(objective.id)[0]
        fake_llm.failures["generate_replacement"] = LLMUnavailable("model unreachable")

        outcome = manager.reject(rejected.id, EXPERT_ID, "Too vague")

        assert outcome.question.status == QuestionStatus.closed
        assert outcome.replacement is None
        assert outcome.replacement_error.code == "llm_unavailable"
        assert scheduler.require_objective(objective.id).questions_asked == 2


class TestObjectiveNextStep:
    def test_answer_asks_next_question(self, manager, scheduler, fake_llm, objective, project_scope):
        question = scheduler.objective_questions(objective.id)[0]
        fake_llm.next_steps.append(NextStep(action="new_question", question="Who approves refunds?"))

        outcome = manager.answer(question.id, EXPERT_ID, "Invoices go out monthly")

        assert outcome.next_step.action == "new_question"
        assert outcome.next_step.question.question == "Who approves refunds?"
        assert outcome.next_step.question.parent_question_id is None
        assert outcome.next_step.question.scope_id == project_scope.id
        assert scheduler.require_objective(objective.id).questions_asked == 3

    def test_answer_can_complete_objective(self, manager, scheduler, fake_llm, objective):
        question = scheduler.objective_questions(objective.id)[0]
        fake_llm.next_steps.append(NextStep(action="complete", reasoning="Enough is known"))

        outcome = manager.answer(question.id, EXPERT_ID, "That covers it")

        assert outcome.next_step.action == "complete"
        assert outcome.next_step.reasoning == "Enough is known"
        assert scheduler.require_objective(objective.id).status == ObjectiveStatus.completed

    def test_next_step_failure_keeps_the_answer(self, db, manager, scheduler, fake_llm, objective):
        question = scheduler.objective_questions(objective.id)[0]
        fake_llm.failures["decide_next_step"] = LLMUnavailable("model unreachable")

        outcome = manager.answer(question.id, EXPERT_ID, "Monthly")

        assert outcome.question.status == QuestionStatus.answered
        assert outcome.next_step is None
        assert outcome.next_step_error.code == "llm_unavailable"
        assert db.query(TeamQuestion).count() == 2
