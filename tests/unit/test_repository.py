"""
Unit tests for the job and configuration repositories.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from queuectl.constants import JobState
from queuectl.db import AmbiguousJobId, ConfigRepository, Job, JobRepository, get_session_context
from queuectl.scheduling import utcnow
from queuectl.types.job import RetryDecision


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest.fixture
    def repo(self, db_session: Session) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    def test_create_job_defaults(self, repo: JobRepository, db_session: Session):
        """Test a new job starts pending and immediately eligible."""
        before = utcnow()
        job = repo.create_job(command="echo hello")
        db_session.commit()

        assert job.id is not None
        assert len(job.id) == 36
        assert job.command == "echo hello"
        assert job.state == JobState.PENDING
        assert job.priority == 0
        assert job.attempts == 0
        assert job.max_retries is None
        assert job.timeout is None
        assert job.started_at is None
        assert job.completed_at is None
        assert job.next_run_at >= before
        assert job.next_run_at <= utcnow()

    def test_create_job_with_options(self, repo: JobRepository, db_session: Session):
        """Test priority, timeout, max_retries and schedule are stored."""
        run_at = utcnow() + timedelta(minutes=5)
        job = repo.create_job(
            command="sleep 1",
            priority=7,
            timeout=30,
            max_retries=5,
            next_run_at=run_at,
        )
        db_session.commit()

        stored = repo.get_job(job.id)
        assert stored.priority == 7
        assert stored.timeout == 30
        assert stored.max_retries == 5
        assert stored.next_run_at == run_at
        assert repo.claim_next_job() is None

    def test_get_job_not_found(self, repo: JobRepository):
        """Test getting a non-existent job."""
        assert repo.get_job("00000000-0000-0000-0000-000000000000") is None

    def test_find_job_by_exact_id_and_prefix(self, repo: JobRepository, db_session: Session):
        """Test lookups accept a full id or a unique prefix."""
        job = repo.create_job(command="echo find")
        db_session.commit()

        assert repo.find_job(job.id).id == job.id
        assert repo.find_job(job.short_id).id == job.id
        assert repo.find_job("zzzz") is None

    def test_find_job_respects_state(self, repo: JobRepository, db_session: Session):
        """Test the state filter applies to exact and prefix lookups."""
        job = repo.create_job(command="echo find")
        db_session.commit()

        assert repo.find_job(job.id, state=JobState.DEAD) is None
        assert repo.find_job(job.short_id, state=JobState.DEAD) is None
        assert repo.find_job(job.short_id, state=JobState.PENDING).id == job.id

    def test_find_job_ambiguous_prefix(self, repo: JobRepository, db_session: Session):
        """Test a prefix shared by several jobs is reported, not guessed."""
        db_session.add_all([
            Job(id="abc00000-0000-0000-0000-000000000001", command="echo 1"),
            Job(id="abc00000-0000-0000-0000-000000000002", command="echo 2"),
        ])
        db_session.commit()

        with pytest.raises(AmbiguousJobId):
            repo.find_job("abc")

        assert repo.find_job("abc00000-0000-0000-0000-000000000002").command == "echo 2"

    def test_list_jobs_ordering_and_filter(self, repo: JobRepository, db_session: Session):
        """Test listing is priority desc, then most recent first."""
        now = utcnow()
        old_low = Job(command="old low", priority=0, created_at=now - timedelta(seconds=30))
        new_low = Job(command="new low", priority=0, created_at=now - timedelta(seconds=10))
        high = Job(command="high", priority=5, created_at=now - timedelta(seconds=60))
        dead = Job(command="dead", priority=1, state=JobState.DEAD)
        db_session.add_all([old_low, new_low, high, dead])
        db_session.commit()

        listed = [job.command for job in repo.list_jobs()]
        assert listed == ["high", "dead", "new low", "old low"]

        assert [job.command for job in repo.list_jobs(state=JobState.DEAD)] == ["dead"]
        assert len(repo.list_jobs(limit=2)) == 2

    def test_claim_next_job_success(self, repo: JobRepository, db_session: Session):
        """Test a pending job is moved to processing with started_at set."""
        job = repo.create_job(command="echo claim")
        db_session.commit()

        claimed = repo.claim_next_job()
        db_session.commit()

        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.state == JobState.PROCESSING
        assert claimed.started_at is not None
        assert claimed.attempts == 0

    def test_claim_next_job_empty_queue(self, repo: JobRepository):
        """Test claiming from an empty queue returns None."""
        assert repo.claim_next_job() is None

    def test_processing_job_is_not_claimed_twice(self, repo: JobRepository, db_session: Session):
        """Test a claimed job is never handed out again."""
        repo.create_job(command="echo once")
        db_session.commit()

        first = repo.claim_next_job()
        db_session.commit()
        second = repo.claim_next_job()
        db_session.commit()

        assert first is not None
        assert second is None

    def test_priority_ordering(self, repo: JobRepository, db_session: Session):
        """Test the higher priority job is claimed first regardless of age."""
        now = utcnow()
        low = Job(command="low", priority=5, created_at=now - timedelta(seconds=60))
        high = Job(command="high", priority=10, created_at=now)
        db_session.add_all([low, high])
        db_session.commit()

        assert repo.claim_next_job().id == high.id
        assert repo.claim_next_job().id == low.id

    def test_fifo_within_priority(self, repo: JobRepository, db_session: Session):
        """Test the oldest job wins among equal priorities."""
        now = utcnow()
        later = Job(command="later", priority=0, created_at=now)
        earlier = Job(command="earlier", priority=0, created_at=now - timedelta(seconds=5))
        db_session.add_all([later, earlier])
        db_session.commit()

        assert repo.claim_next_job().id == earlier.id
        assert repo.claim_next_job().id == later.id

    def test_future_job_not_claimed(self, repo: JobRepository, db_session: Session, monkeypatch):
        """Test a scheduled job only becomes claimable once due."""
        job = repo.create_job(command="echo later", next_run_at=utcnow() + timedelta(seconds=10))
        db_session.commit()

        assert repo.claim_next_job() is None

        future = utcnow() + timedelta(seconds=11)
        monkeypatch.setattr("queuectl.db.repository.utcnow", lambda: future)

        claimed = repo.claim_next_job()
        assert claimed is not None
        assert claimed.id == job.id

    def test_failed_job_claimable_when_due(self, repo: JobRepository, db_session: Session):
        """Test a failed job is eligible again once its backoff has elapsed."""
        db_session.add(Job(command="retry me", state=JobState.FAILED, attempts=1))
        db_session.commit()

        claimed = repo.claim_next_job()
        assert claimed is not None
        assert claimed.state == JobState.PROCESSING
        assert claimed.attempts == 1

    @pytest.mark.parametrize("state", [JobState.COMPLETED, JobState.DEAD, JobState.PROCESSING])
    def test_non_eligible_states_not_claimed(
        self,
        repo: JobRepository,
        db_session: Session,
        state: JobState,
    ):
        """Test only pending and failed jobs are claimable."""
        db_session.add(Job(command="echo no", state=state))
        db_session.commit()

        assert repo.claim_next_job() is None

    def test_claim_lost_race_returns_none(self, db, monkeypatch):
        """Test a row claimed by someone else between select and update is skipped."""
        with get_session_context() as session:
            job = JobRepository(session).create_job(command="echo race")

        winners = []
        with get_session_context() as session:
            original_execute = session.execute

            def racing_execute(statement, *args, **kwargs):
                result = original_execute(statement, *args, **kwargs)
                if not winners:
                    # Another worker claims the row right after our select
                    with get_session_context() as other:
                        winners.append(JobRepository(other).claim_next_job())
                return result

            monkeypatch.setattr(session, "execute", racing_execute)
            loser = JobRepository(session).claim_next_job()

        assert loser is None
        assert winners[0] is not None
        assert winners[0].id == job.id

    def test_complete_job(self, repo: JobRepository, db_session: Session):
        """Test successful completion records output and duration."""
        job = repo.create_job(command="echo done")
        db_session.commit()
        repo.claim_next_job()
        db_session.commit()

        completed = repo.complete_job(job.id, output="STDOUT:\ndone\n", duration_ms=42)
        db_session.commit()

        assert completed is not None
        assert completed.state == JobState.COMPLETED
        assert completed.completed_at is not None
        assert completed.duration == 42
        assert completed.output == "STDOUT:\ndone\n"
        assert completed.attempts == 0

    def test_complete_job_requires_processing(self, repo: JobRepository, db_session: Session):
        """Test a job that is not processing cannot be completed."""
        job = repo.create_job(command="echo nope")
        db_session.commit()

        assert repo.complete_job(job.id, output="", duration_ms=1) is None
        assert repo.get_job(job.id).state == JobState.PENDING

    def test_fail_job_with_retry(self, repo: JobRepository, db_session: Session):
        """Test a failure with retries left schedules the next attempt."""
        job = repo.create_job(command="exit 1", max_retries=3)
        db_session.commit()
        repo.claim_next_job()
        db_session.commit()

        before = utcnow()
        decision = RetryDecision(state=JobState.FAILED, attempts=1, delay_seconds=2)
        failed = repo.fail_job(job.id, decision, output="boom", duration_ms=5)
        db_session.commit()

        assert failed is not None
        assert failed.state == JobState.FAILED
        assert failed.attempts == 1
        assert failed.output == "boom"
        assert failed.duration == 5
        assert failed.completed_at is None
        assert before + timedelta(seconds=2) <= failed.next_run_at <= utcnow() + timedelta(seconds=2)

    def test_fail_job_to_dlq(self, repo: JobRepository, db_session: Session):
        """Test a failure without retries left dead-letters the job."""
        job = repo.create_job(command="exit 1", max_retries=1)
        db_session.commit()
        repo.claim_next_job()
        db_session.commit()

        decision = RetryDecision(state=JobState.DEAD, attempts=1)
        dead = repo.fail_job(job.id, decision, output="final", duration_ms=3)
        db_session.commit()

        assert dead is not None
        assert dead.state == JobState.DEAD
        assert dead.attempts == 1
        assert dead.completed_at is not None
        assert repo.claim_next_job() is None

    @pytest.mark.parametrize("delay_seconds", [10**11, 10**20])
    def test_fail_job_with_delay_past_calendar(
        self,
        repo: JobRepository,
        db_session: Session,
        delay_seconds: int,
    ):
        """Test a backoff beyond the last representable date parks the job at datetime.max."""
        job = repo.create_job(command="exit 1", max_retries=20)
        db_session.commit()
        repo.claim_next_job()
        db_session.commit()

        decision = RetryDecision(state=JobState.FAILED, attempts=1, delay_seconds=delay_seconds)
        failed = repo.fail_job(job.id, decision, output="", duration_ms=1)
        db_session.commit()

        assert failed is not None
        assert failed.state == JobState.FAILED
        assert failed.attempts == 1
        assert failed.next_run_at == datetime.max
        assert repo.claim_next_job() is None

    def test_fail_job_with_stale_attempts(self, repo: JobRepository, db_session: Session):
        """Test a decision computed from an outdated attempt count is rejected."""
        job = repo.create_job(command="exit 1")
        db_session.commit()
        repo.claim_next_job()
        db_session.commit()

        decision = RetryDecision(state=JobState.FAILED, attempts=3, delay_seconds=8)
        assert repo.fail_job(job.id, decision, output="", duration_ms=1) is None
        assert repo.get_job(job.id).attempts == 0

    def test_retry_from_dlq(self, repo: JobRepository, db_session: Session):
        """Test a dead job is reset to pending and immediately claimable."""
        job = Job(
            command="exit 1",
            state=JobState.DEAD,
            attempts=3,
            max_retries=3,
            completed_at=utcnow(),
            next_run_at=utcnow() + timedelta(hours=1),
        )
        db_session.add(job)
        db_session.commit()

        retried = repo.retry_from_dlq(job.short_id)
        db_session.commit()

        assert retried is not None
        assert retried.state == JobState.PENDING
        assert retried.attempts == 0
        assert retried.completed_at is None
        assert retried.next_run_at <= utcnow()
        assert repo.claim_next_job().id == job.id

    def test_retry_from_dlq_requires_dead(self, repo: JobRepository, db_session: Session):
        """Test retrying a job that is not dead changes nothing."""
        job = repo.create_job(command="echo alive")
        db_session.commit()

        assert repo.retry_from_dlq(job.id) is None
        assert repo.retry_from_dlq("does-not-exist") is None
        assert repo.get_job(job.id).state == JobState.PENDING

    def test_get_state_counts(self, repo: JobRepository, db_session: Session):
        """Test counts cover every state, including empty ones."""
        db_session.add_all([
            Job(command="a"),
            Job(command="b"),
            Job(command="c", state=JobState.DEAD),
        ])
        db_session.commit()

        counts = repo.get_state_counts()
        assert counts == {
            "pending": 2,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "dead": 1,
        }

    def test_get_stats(self, repo: JobRepository, db_session: Session):
        """Test aggregate statistics over completed jobs."""
        for index, duration in enumerate([100, 300, 200, 400]):
            db_session.add(
                Job(
                    command=f"job {index}",
                    state=JobState.COMPLETED,
                    duration=duration,
                    priority=index % 2,
                    completed_at=utcnow(),
                )
            )
        db_session.add(Job(command="dead", state=JobState.DEAD, timeout=5))
        db_session.commit()

        stats = repo.get_stats()

        assert stats.total == 5
        assert stats.state_counts["completed"] == 4
        assert stats.success_rate == 80.0
        assert stats.durations.count == 4
        assert stats.durations.average_ms == 250.0
        assert stats.durations.median_ms == 300
        assert stats.durations.min_ms == 100
        assert stats.durations.max_ms == 400
        assert stats.durations.p95_ms == 400
        assert [slow.duration_ms for slow in stats.slowest_jobs] == [400, 300, 200, 100]
        assert stats.priority_histogram == {1: 2, 0: 3}
        assert stats.jobs_with_timeout == 1

    def test_get_stats_empty(self, repo: JobRepository):
        """Test statistics of an empty queue."""
        stats = repo.get_stats()

        assert stats.total == 0
        assert stats.success_rate is None
        assert stats.durations is None
        assert stats.slowest_jobs == []


class TestConfigRepository:
    """Tests for ConfigRepository."""

    @pytest.fixture
    def store(self, db_session: Session) -> ConfigRepository:
        """Create a configuration store instance."""
        return ConfigRepository(db_session)

    def test_get_default(self, store: ConfigRepository):
        """Test unset keys fall back to the default."""
        assert store.get("backoff_base", "2") == "2"
        assert store.get_int("backoff_base", 2) == 2

    def test_set_and_upsert(self, store: ConfigRepository, db_session: Session):
        """Test values are inserted, then updated in place."""
        store.set("max_retries", "5")
        db_session.commit()
        assert store.get_int("max_retries", 3) == 5

        store.set("max_retries", "7")
        db_session.commit()
        assert store.get_int("max_retries", 3) == 7
        assert store.get_all() == {"max_retries": "7"}

    def test_get_int_malformed_value(self, store: ConfigRepository, db_session: Session):
        """Test a non-integer stored value falls back to the default."""
        store.set("backoff_base", "fast")
        db_session.commit()

        assert store.get_int("backoff_base", 2) == 2

    def test_updates_visible_across_sessions(self, store: ConfigRepository, db_session: Session):
        """Test a value written elsewhere is read fresh, not from cache."""
        store.set("backoff_base", "2")
        db_session.commit()
        assert store.get_int("backoff_base", 0) == 2

        with get_session_context() as other:
            ConfigRepository(other).set("backoff_base", "3")

        assert store.get_int("backoff_base", 0) == 3


def test_job_repr_and_short_id(db_session: Session):
    """Test the convenience accessors on the model."""
    job = JobRepository(db_session).create_job(command="echo repr", max_retries=3)

    assert job.short_id == job.id[:8]
    assert "attempts=0/3" in repr(job)
