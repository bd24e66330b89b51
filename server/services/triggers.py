"""Trigger adapters - turn external stimuli into executions.

Supported trigger types (registered from a workflow's trigger nodes):
- MANUAL:   explicit API call
- WEBHOOK:  webhookTrigger node, config ``path`` and ``method``
- SCHEDULE: cronScheduler node, config ``cronExpression`` and ``timezone``
- EVENT:    eventTrigger node, config ``source`` and ``eventType``

Every adapter calls ``start_execution(workflow_id, version, payload,
trigger_type)``; the graph itself never waits for the stimulus.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from constants import EVENT_TRIGGER_TYPE, SCHEDULE_TRIGGER_TYPE, WEBHOOK_TRIGGER_TYPE
from core.logging import get_logger
from models.workflow import WorkflowDefinition
from services.execution import ExecutionEngineError, TriggerType, WorkflowValidationError
from services.scheduler import CronScheduler, build_cron_trigger

logger = get_logger(__name__)

StartExecution = Callable[..., Awaitable[str]]

ANY_METHOD = "ANY"
WILDCARD = "*"


@dataclass(frozen=True)
class WebhookRoute:
    path: str
    method: str
    workflow_id: str
    version: int
    node_id: str

    def accepts(self, method: str) -> bool:
        return self.method == ANY_METHOD or self.method == method.upper()


@dataclass(frozen=True)
class EventSubscription:
    source: str
    event_type: str
    workflow_id: str
    version: int
    node_id: str

    def matches(self, source: str, event_type: str) -> bool:
        return (self.source in (WILDCARD, source)) and (self.event_type in (WILDCARD, event_type))


def normalize_path(path: str) -> str:
    return path.strip().strip("/")


@dataclass
class TriggerPlan:
    """Validated triggers of one definition, not yet armed."""
    definition: WorkflowDefinition
    webhooks: List[WebhookRoute] = field(default_factory=list)
    schedules: List[Tuple[str, str, str]] = field(default_factory=list)
    events: List[EventSubscription] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {"webhooks": len(self.webhooks), "schedules": len(self.schedules), "events": len(self.events)}


class TriggerManager:
    """Registers a workflow's trigger nodes and starts executions when they fire."""

    def __init__(self, start_execution: StartExecution, cron: Optional[CronScheduler] = None):
        self._start_execution = start_execution
        self.cron = cron
        self._webhooks: Dict[str, WebhookRoute] = {}
        self._events: List[EventSubscription] = []
        self._cron_jobs: Dict[str, List[str]] = {}

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register_workflow(self, definition: WorkflowDefinition) -> Dict[str, int]:
        """(Re)register every trigger node of ``definition``.

        Replaces the triggers of previously registered versions of the same
        workflow. Conflicts (a webhook path owned by another workflow, a bad
        cron expression) raise WorkflowValidationError and register nothing.
        """
        return self.apply(self.check_workflow(definition))

    def check_workflow(self, definition: WorkflowDefinition) -> TriggerPlan:
        """Validate the trigger nodes of ``definition`` without arming anything."""
        plan = TriggerPlan(definition)
        webhooks, schedules, events = plan.webhooks, plan.schedules, plan.events
        errors: List[str] = []

        for node in definition.nodes:
            config = node.config
            if node.type == WEBHOOK_TRIGGER_TYPE:
                path = normalize_path(str(config.get('path') or f"{definition.id}/{node.id}"))
                if any(route.path == path for route in webhooks):
                    errors.append(f"Webhook path '{path}' used by more than one node")
                    continue
                owner = self._webhooks.get(path)
                if owner is not None and owner.workflow_id != definition.id:
                    errors.append(f"Webhook path '{path}' already used by workflow {owner.workflow_id}")
                    continue
                webhooks.append(WebhookRoute(
                    path=path,
                    method=str(config.get('method', ANY_METHOD)).upper(),
                    workflow_id=definition.id,
                    version=definition.version,
                    node_id=node.id,
                ))

            elif node.type == SCHEDULE_TRIGGER_TYPE:
                expression = config.get('cronExpression') or config.get('cron')
                tz = config.get('timezone') or (self.cron.timezone if self.cron else "UTC")
                if not expression:
                    errors.append(f"Node {node.id}: cronExpression is required")
                    continue
                try:
                    build_cron_trigger(expression, tz)
                except ValueError as e:
                    errors.append(f"Node {node.id}: {e}")
                    continue
                schedules.append((node.id, expression, tz))

            elif node.type == EVENT_TRIGGER_TYPE:
                events.append(EventSubscription(
                    source=str(config.get('source') or WILDCARD),
                    event_type=str(config.get('eventType') or WILDCARD),
                    workflow_id=definition.id,
                    version=definition.version,
                    node_id=node.id,
                ))

        if errors:
            raise WorkflowValidationError(errors)
        return plan

    def apply(self, plan: TriggerPlan) -> Dict[str, int]:
        """Arm a checked plan, replacing the workflow's previous triggers."""
        definition = plan.definition
        self.unregister_workflow(definition.id)

        for route in plan.webhooks:
            self._webhooks[route.path] = route
        self._events.extend(plan.events)

        schedules = plan.schedules
        if schedules and self.cron is None:
            logger.warning("No cron scheduler configured, schedule triggers ignored",
                           workflow_id=definition.id)
        elif schedules:
            job_ids = []
            for node_id, expression, tz in schedules:
                job_id = f"workflow:{definition.id}:{node_id}"
                self.cron.register_cron_job(
                    job_id, expression, self.fire_schedule, timezone=tz,
                    workflow_id=definition.id, version=definition.version,
                    node_id=node_id, cron_expression=expression,
                )
                job_ids.append(job_id)
            self._cron_jobs[definition.id] = job_ids

        registered = plan.counts()
        if any(registered.values()):
            logger.info("Triggers registered", workflow_id=definition.id,
                        version=definition.version, **registered)
        return registered

    def unregister_workflow(self, workflow_id: str) -> None:
        for path in [p for p, route in self._webhooks.items() if route.workflow_id == workflow_id]:
            del self._webhooks[path]
        self._events = [sub for sub in self._events if sub.workflow_id != workflow_id]
        for job_id in self._cron_jobs.pop(workflow_id, []):
            self.cron.remove_cron_job(job_id)

    def describe(self) -> Dict[str, Any]:
        return {
            "webhooks": [
                {"path": r.path, "method": r.method, "workflow_id": r.workflow_id, "node_id": r.node_id}
                for r in self._webhooks.values()
            ],
            "events": [
                {"source": s.source, "event_type": s.event_type, "workflow_id": s.workflow_id,
                 "node_id": s.node_id}
                for s in self._events
            ],
            "schedules": {workflow_id: list(jobs) for workflow_id, jobs in self._cron_jobs.items()},
        }

    # =========================================================================
    # FIRING
    # =========================================================================

    async def trigger_manual(self, workflow_id: str, version: Optional[int] = None,
                             payload: Optional[Dict[str, Any]] = None,
                             user_id: Optional[str] = None) -> str:
        return await self._start_execution(
            workflow_id, version, payload or {}, trigger_type=TriggerType.MANUAL, user_id=user_id
        )

    def find_webhook(self, path: str) -> Optional[WebhookRoute]:
        return self._webhooks.get(normalize_path(path))

    async def fire_webhook(self, route: WebhookRoute, request_data: Dict[str, Any]) -> str:
        logger.info("[Webhook] Triggering workflow", path=route.path, workflow_id=route.workflow_id)
        payload = {**request_data, "node_id": route.node_id}
        return await self._start_execution(
            route.workflow_id, route.version, payload, trigger_type=TriggerType.WEBHOOK
        )

    async def fire_schedule(self, workflow_id: str, version: int, node_id: str,
                            cron_expression: str) -> Optional[str]:
        """Cron job callback. Errors are logged, the job keeps its schedule."""
        payload = {
            "scheduled_time": datetime.now(timezone.utc).isoformat(),
            "cron_expression": cron_expression,
            "node_id": node_id,
        }
        try:
            return await self._start_execution(
                workflow_id, version, payload, trigger_type=TriggerType.SCHEDULE
            )
        except ExecutionEngineError as e:
            logger.warning("Scheduled execution not started", workflow_id=workflow_id,
                           node_id=node_id, error=str(e))
            return None

    async def emit_event(self, source: str, event_type: str,
                         data: Optional[Dict[str, Any]] = None) -> List[str]:
        """Start one execution per matching event subscription."""
        started = []
        for subscription in list(self._events):
            if not subscription.matches(source, event_type):
                continue
            payload = {"source": source, "type": event_type, "data": data or {},
                       "node_id": subscription.node_id}
            try:
                started.append(await self._start_execution(
                    subscription.workflow_id, subscription.version, payload,
                    trigger_type=TriggerType.EVENT,
                ))
            except ExecutionEngineError as e:
                logger.warning("Event execution not started", workflow_id=subscription.workflow_id,
                               source=source, event_type=event_type, error=str(e))
        logger.debug("Event dispatched", source=source, event_type=event_type, started=len(started))
        return started
