"""Release coordinator: rolls a new image onto a service, reverts on failure."""

import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fargate_deploy.config.models import ReleaseSettings
from fargate_deploy.release.health import HealthMonitor
from fargate_deploy.release.platform import ServicePlatform, parse_image_ref
from fargate_deploy.state.manager import StateManager
from fargate_deploy.state.models import DeploymentAttempt, ReleaseStage, utcnow
from fargate_deploy.utils.errors import (
    DeploymentError,
    ErrorCategory,
    ErrorContext,
    HealthCheckTimeout,
    OperatorAbortError,
    ReleaseFailedError,
    ReleaseInProgressError,
    exit_code_for,
)
from fargate_deploy.utils.logging import LogContext, get_logger
from fargate_deploy.utils.retry import RetryStrategy

def new_attempt_id() -> str:
    return f"{utcnow():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


@dataclass
class ReleaseResult:
    """Final attempt and the error that ended it, if any."""
    attempt: DeploymentAttempt
    error: Optional[DeploymentError] = None

    def is_success(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.error)

    def to_dict(self) -> Dict:
        data = self.attempt.model_dump(mode='json')
        data['outcome'] = self.attempt.outcome
        data['error'] = self.error.to_dict() if self.error else None
        return data


class ReleaseCoordinator:
    """Drives DeploymentAttempts through their stages.

    PENDING -> IMAGE_PUBLISHED -> TASK_REGISTERED -> ROLLOUT_IN_PROGRESS ->
    HEALTHY, or FAILED -> ROLLED_BACK. Every stage change is persisted
    before the next step starts. Only one attempt per service may be
    active; a FAILED attempt stays active until it has been rolled back.
    """

    def __init__(
        self,
        state_manager: StateManager,
        platform: ServicePlatform,
        monitor: HealthMonitor,
        settings: Optional[ReleaseSettings] = None,
        retry_strategy: Optional[RetryStrategy] = None,
        cancel_event: Optional[threading.Event] = None,
        id_factory: Callable[[], str] = new_attempt_id
    ):
        """Initialize release coordinator.

        Args:
            state_manager: Persists attempts
            platform: Service the releases run against
            monitor: Health monitor for rollouts and reverts
            settings: Rollout and rollback timeouts
            retry_strategy: Retry policy for platform calls
            cancel_event: Set by the caller to abort a rollout
            id_factory: Produces attempt ids
        """
        self.state_manager = state_manager
        self.platform = platform
        self.monitor = monitor
        self.settings = settings or ReleaseSettings()
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.cancel_event = cancel_event or threading.Event()
        self.id_factory = id_factory
        self.logger = get_logger(__name__)

    @property
    def service(self) -> str:
        return self.platform.service_name

    def _lock(self) -> threading.Lock:
        lock = self.state_manager.release_lock(self.service)
        if not lock.acquire(blocking=False):
            raise ReleaseInProgressError(
                f"A release for {self.service} is already running in this process",
                context=ErrorContext(operation='release')
            )
        return lock

    def _call(self, func, *args, attempt: DeploymentAttempt, operation: str):
        context = ErrorContext(
            attempt_id=attempt.attempt_id,
            operation=operation,
            last_completed_step=attempt.stage.value,
        )
        return self.retry_strategy.execute_with_retry(func, *args, context=context)

    def _advance(self, attempt: DeploymentAttempt, stage: ReleaseStage, reason: Optional[str] = None) -> None:
        attempt.advance(stage, reason)
        self.state_manager.update_attempt(attempt)
        LogContext(self.logger, attempt_id=attempt.attempt_id, stage=stage.value).info(
            f"{attempt.kind} {attempt.attempt_id}: {stage.value}" + (f" ({reason})" if reason else "")
        )

    # Release

    def release(self, image_ref: str) -> ReleaseResult:
        """Roll ``image_ref`` onto the service.

        Returns:
            ReleaseResult whose attempt is HEALTHY on success, ROLLED_BACK
            after a reverted failure, or FAILED if the revert failed too

        Raises:
            ReleaseInProgressError: If another attempt for the service is active
            ConfigurationError: If ``image_ref`` is malformed
        """
        image = parse_image_ref(image_ref)
        lock = self._lock()
        try:
            attempt = DeploymentAttempt(
                attempt_id=self.id_factory(),
                service=self.service,
                kind='release',
                image_ref=image_ref,
            )
            self.state_manager.begin_attempt(attempt)
            log = LogContext(self.logger, attempt_id=attempt.attempt_id)
            log.info(f"Releasing {image_ref} to {self.service}")

            try:
                attempt.image_uri = self._call(
                    self.platform.resolve_image, image, attempt=attempt, operation='resolve-image'
                )
                self._advance(attempt, ReleaseStage.IMAGE_PUBLISHED, attempt.image_uri)

                attempt.previous_revision = self._call(
                    self.platform.current_revision, attempt=attempt, operation='describe-service'
                )
                attempt.task_revision = self._call(
                    self.platform.register_revision, attempt.previous_revision, attempt.image_uri,
                    attempt=attempt, operation='register-task-definition'
                )
                self._advance(attempt, ReleaseStage.TASK_REGISTERED, attempt.task_revision)
                self._check_cancel(attempt)
            except DeploymentError as e:
                return self._fail_before_rollout(attempt, e)

            return self._roll_out(attempt, discard_on_failure=True)
        finally:
            lock.release()

    def _check_cancel(self, attempt: DeploymentAttempt) -> None:
        if self.cancel_event.is_set():
            raise OperatorAbortError(
                f"Release {attempt.attempt_id} aborted by operator",
                context=ErrorContext(attempt_id=attempt.attempt_id, last_completed_step=attempt.stage.value)
            )

    def _fail_before_rollout(
        self, attempt: DeploymentAttempt, error: DeploymentError, discard: bool = True
    ) -> ReleaseResult:
        """Nothing was rolled out; discard the registered revision if asked."""
        error.context.attempt_id = attempt.attempt_id
        error.context.last_completed_step = error.context.last_completed_step or attempt.stage.value
        self._advance(attempt, ReleaseStage.FAILED, error.message)
        if discard and attempt.task_revision:
            try:
                self._call(self.platform.discard_revision, attempt.task_revision,
                           attempt=attempt, operation='deregister-task-definition')
            except DeploymentError as e:
                self.logger.warning(f"Could not deregister {attempt.task_revision}: {e.message}")
                return ReleaseResult(attempt, error)
        self._advance(attempt, ReleaseStage.ROLLED_BACK, 'nothing rolled out')
        return ReleaseResult(attempt, error)

    def _roll_out(self, attempt: DeploymentAttempt, discard_on_failure: bool) -> ReleaseResult:
        """Start the rollout of ``attempt.task_revision`` and wait for a verdict."""
        try:
            self._call(self.platform.start_rollout, attempt.task_revision,
                       attempt=attempt, operation='update-service')
        except DeploymentError as e:
            return self._fail_before_rollout(attempt, e, discard_on_failure)
        self._advance(attempt, ReleaseStage.ROLLOUT_IN_PROGRESS)

        try:
            verdict = self.monitor.wait_for(
                attempt.task_revision,
                self.settings.rollout_timeout,
                cancel_event=self.cancel_event,
                attempt_id=attempt.attempt_id,
            )
        except OperatorAbortError as e:
            e.context.last_completed_step = ReleaseStage.ROLLOUT_IN_PROGRESS.value
            return self._abort_rollout(attempt, e, discard_on_failure)
        except HealthCheckTimeout as e:
            return self._fail_rollout(attempt, e.message, e, discard_on_failure)

        if not verdict.healthy:
            return self._fail_rollout(attempt, f"unhealthy: {verdict.reason}", None, discard_on_failure)

        try:
            self._call(self.platform.decommission, attempt.previous_revision, self.settings.rollout_timeout,
                       attempt=attempt, operation='decommission')
        except DeploymentError as e:
            return self._fail_rollout(attempt, f"old revision did not drain: {e.message}", e, discard_on_failure)

        self._advance(attempt, ReleaseStage.HEALTHY, verdict.reason)
        return ReleaseResult(attempt)

    def _fail_rollout(
        self,
        attempt: DeploymentAttempt,
        reason: str,
        cause: Optional[DeploymentError],
        discard_on_failure: bool
    ) -> ReleaseResult:
        self._advance(attempt, ReleaseStage.FAILED, reason)
        revert_error = self._revert(attempt, discard_on_failure)
        if revert_error is None:
            self._advance(attempt, ReleaseStage.ROLLED_BACK, f"restored {attempt.previous_revision}")
            return ReleaseResult(attempt, ReleaseFailedError(
                f"{attempt.kind.capitalize()} {attempt.attempt_id} failed ({reason}); "
                f"{attempt.previous_revision} is serving again",
                context=ErrorContext(attempt_id=attempt.attempt_id,
                                     last_completed_step=ReleaseStage.ROLLOUT_IN_PROGRESS.value),
                cause=cause,
            ))
        return ReleaseResult(attempt, ReleaseFailedError(
            f"{attempt.kind.capitalize()} {attempt.attempt_id} failed ({reason}) and could not be "
            f"reverted: {revert_error.message}",
            context=ErrorContext(attempt_id=attempt.attempt_id,
                                 last_completed_step=ReleaseStage.FAILED.value),
            cause=revert_error,
            suggestions=['Run rollback to restore the previous revision'],
        ))

    def _abort_rollout(
        self,
        attempt: DeploymentAttempt,
        error: OperatorAbortError,
        discard_on_failure: bool
    ) -> ReleaseResult:
        error.context.attempt_id = attempt.attempt_id
        revert_error = self._revert(attempt, discard_on_failure)
        if revert_error is None:
            self._advance(attempt, ReleaseStage.ROLLED_BACK, 'aborted by operator')
        else:
            self._advance(attempt, ReleaseStage.FAILED, f"aborted; revert failed: {revert_error.message}")
        return ReleaseResult(attempt, error)

    def _revert(self, attempt: DeploymentAttempt, discard: bool) -> Optional[DeploymentError]:
        """Re-activate the previous revision. Returns the error if that fails."""
        log = LogContext(self.logger, attempt_id=attempt.attempt_id, stage='revert')
        if not attempt.previous_revision:
            return DeploymentError("No previous revision recorded", category=ErrorCategory.RELEASE)
        log.info(f"Reverting {self.service} to {attempt.previous_revision}")
        try:
            self._call(self.platform.start_rollout, attempt.previous_revision,
                       attempt=attempt, operation='revert')
            verdict = self.monitor.wait_for(
                attempt.previous_revision,
                self.settings.rollback_timeout,
                attempt_id=attempt.attempt_id,
            )
            if not verdict.healthy:
                return ReleaseFailedError(f"{attempt.previous_revision} unhealthy: {verdict.reason}")
            if discard and attempt.task_revision:
                self._call(self.platform.discard_revision, attempt.task_revision,
                           attempt=attempt, operation='deregister-task-definition')
        except DeploymentError as e:
            log.error(f"Revert of {attempt.attempt_id} failed: {e.message}")
            return e
        return None

    # Rollback

    def rollback(self) -> ReleaseResult:
        """Operator-driven rollback.

        An active attempt (FAILED, or left mid-stage by a crashed run) is
        reverted and closed. Otherwise the service returns to the revision
        that served before the release now serving, as a new attempt.

        Raises:
            ReleaseFailedError: If there is nothing to roll back to
        """
        lock = self._lock()
        try:
            active = self.state_manager.active_attempts(self.service)
            if active:
                return self._resolve(active[-1])
            return self._rollback_to_previous()
        finally:
            lock.release()

    def _resolve(self, attempt: DeploymentAttempt) -> ReleaseResult:
        log = LogContext(self.logger, attempt_id=attempt.attempt_id)
        log.info(f"Resolving {attempt.kind} {attempt.attempt_id} left {attempt.stage.value}")
        if attempt.stage not in (ReleaseStage.FAILED, ReleaseStage.ROLLOUT_IN_PROGRESS):
            self._advance(attempt, ReleaseStage.FAILED, 'interrupted before rollout')

        if attempt.previous_revision:
            revert_error = self._revert(attempt, discard=attempt.kind == 'release')
        else:
            revert_error = None
        if revert_error is not None:
            if attempt.stage == ReleaseStage.ROLLOUT_IN_PROGRESS:
                self._advance(attempt, ReleaseStage.FAILED, f"rollback failed: {revert_error.message}")
            return ReleaseResult(attempt, ReleaseFailedError(
                f"Could not roll back {attempt.attempt_id}: {revert_error.message}",
                context=ErrorContext(attempt_id=attempt.attempt_id, last_completed_step=attempt.stage.value),
                cause=revert_error,
            ))
        self._advance(attempt, ReleaseStage.ROLLED_BACK, 'rolled back by operator')
        return ReleaseResult(attempt)

    def _rollback_target(self, current: str) -> Optional[str]:
        releases = [
            a for a in self.state_manager.snapshot().attempts_for(self.service)
            if a.stage == ReleaseStage.HEALTHY and a.previous_revision
        ]
        for attempt in reversed(releases):
            if attempt.task_revision == current:
                return attempt.previous_revision
        return None

    def _rollback_to_previous(self) -> ReleaseResult:
        current = self.retry_strategy.execute_with_retry(self.platform.current_revision)
        target = self._rollback_target(current)
        if target is None or target == current:
            raise ReleaseFailedError(
                f"No earlier healthy revision of {self.service} to roll back to",
                context=ErrorContext(operation='rollback')
            )

        attempt = DeploymentAttempt(
            attempt_id=self.id_factory(),
            service=self.service,
            kind='rollback',
            task_revision=target,
            previous_revision=current,
        )
        self.state_manager.begin_attempt(attempt)
        try:
            attempt.image_uri = self._call(
                self.platform.revision_image, target, attempt=attempt, operation='describe-task-definition'
            )
            self._advance(attempt, ReleaseStage.IMAGE_PUBLISHED, attempt.image_uri)
            self._advance(attempt, ReleaseStage.TASK_REGISTERED, f"existing revision {target}")
            self._check_cancel(attempt)
        except DeploymentError as e:
            return self._fail_before_rollout(attempt, e, discard=False)
        return self._roll_out(attempt, discard_on_failure=False)
