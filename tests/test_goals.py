from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import GoalStatus, User
from schemas import GoalIn, GoalUpdate
from services import GoalService, NotFoundError, ValidationError

TODAY = date(2025, 1, 15)


def make_session() -> Session:
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_user(session: Session, email: str = "ana@example.com") -> User:
    user = User(name="Ana", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def new_goal(service: GoalService, target: str = "1000.00", target_date=date(2025, 12, 31)):
    return service.create(
        GoalIn(name="Emergency fund", target_amount=Decimal(target), target_date=target_date),
        today=TODAY,
    )


def test_goal_requires_future_target_date() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)

        with pytest.raises(ValidationError):
            new_goal(service, target_date=TODAY)


def test_contributions_complete_goal_exactly_once() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        goal = new_goal(service)

        goal, completed = service.contribute(goal.id, Decimal("250"))
        assert completed is False
        assert goal.progress == 25.0
        assert goal.status == GoalStatus.active

        goal, completed = service.contribute(goal.id, Decimal("800"))
        assert completed is True
        assert goal.status == GoalStatus.completed
        assert goal.current_amount_cents == 105000

        with pytest.raises(ValidationError):
            service.contribute(goal.id, Decimal("1"))
        assert service.get(goal.id).current_amount_cents == 105000


def test_contribution_must_be_positive() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        goal = new_goal(service)

        with pytest.raises(ValidationError):
            service.contribute(goal.id, Decimal("0"))


def test_lowering_target_below_saved_amount_completes_goal() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        goal = new_goal(service)
        service.contribute(goal.id, Decimal("400"))

        updated = service.update(
            goal.id, GoalUpdate(target_amount=Decimal("300")), today=TODAY
        )

        assert updated.status == GoalStatus.completed
        assert updated.progress > 100


def test_status_transitions() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        goal = new_goal(service)

        paused = service.update(goal.id, GoalUpdate(status=GoalStatus.paused), today=TODAY)
        assert paused.status == GoalStatus.paused
        with pytest.raises(ValidationError):
            service.contribute(goal.id, Decimal("10"))

        resumed = service.update(goal.id, GoalUpdate(status=GoalStatus.active), today=TODAY)
        assert resumed.status == GoalStatus.active

        with pytest.raises(ValidationError):
            service.update(goal.id, GoalUpdate(status=GoalStatus.completed), today=TODAY)

        cancelled = service.update(
            goal.id, GoalUpdate(status=GoalStatus.cancelled), today=TODAY
        )
        assert cancelled.status == GoalStatus.cancelled
        with pytest.raises(ValidationError):
            service.update(goal.id, GoalUpdate(status=GoalStatus.active), today=TODAY)


def test_completed_goal_only_accepts_cosmetic_edits() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        goal = new_goal(service, target="100")
        service.contribute(goal.id, Decimal("100"))

        renamed = service.update(
            goal.id, GoalUpdate(name="Rainy day", description="Done"), today=TODAY
        )
        assert renamed.name == "Rainy day"
        assert renamed.status == GoalStatus.completed

        with pytest.raises(ValidationError):
            service.update(goal.id, GoalUpdate(target_amount=Decimal("500")), today=TODAY)
        with pytest.raises(ValidationError):
            service.update(goal.id, GoalUpdate(status=GoalStatus.paused), today=TODAY)


def test_goals_are_scoped_to_their_owner() -> None:
    with make_session() as session:
        owner = make_user(session)
        stranger = make_user(session, "ben@example.com")
        goal = new_goal(GoalService(session, owner.id))

        with pytest.raises(NotFoundError):
            GoalService(session, stranger.id).get(goal.id)
        with pytest.raises(NotFoundError):
            GoalService(session, stranger.id).contribute(goal.id, Decimal("5"))


def test_upcoming_lists_active_goals_due_within_window() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        soon = new_goal(service, target_date=date(2025, 2, 1))
        later = new_goal(service, target_date=date(2025, 6, 1))
        paused = new_goal(service, target_date=date(2025, 1, 20))
        service.update(paused.id, GoalUpdate(status=GoalStatus.paused), today=TODAY)

        upcoming = service.upcoming(30, today=TODAY)

        assert [g.id for g in upcoming] == [soon.id]
        assert later.id not in [g.id for g in service.upcoming(60, today=TODAY)]


def test_statistics_summarize_goal_list() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        first = new_goal(service, target="100")
        new_goal(service, target="300")
        service.contribute(first.id, Decimal("100"))

        stats = service.statistics(service.list_all())

        assert stats["total_goals"] == 2
        assert stats["completed_goals"] == 1
        assert stats["active_goals"] == 1
        assert stats["total_target_amount"] == 400.0
        assert stats["overall_progress"] == 25.0


def test_paused_goal_cannot_drop_target_to_saved_amount() -> None:
    with make_session() as session:
        service = GoalService(session, make_user(session).id)
        goal = new_goal(service)
        service.contribute(goal.id, Decimal("400"))
        service.update(goal.id, GoalUpdate(status=GoalStatus.paused), today=TODAY)

        with pytest.raises(ValidationError):
            service.update(goal.id, GoalUpdate(target_amount=Decimal("400")), today=TODAY)
        with pytest.raises(ValidationError):
            service.update(
                goal.id,
                GoalUpdate(status=GoalStatus.paused, target_amount=Decimal("100")),
                today=TODAY,
            )

        raised = service.update(goal.id, GoalUpdate(target_amount=Decimal("800")), today=TODAY)
        assert raised.status == GoalStatus.paused
        assert raised.target_amount_cents == 80000
