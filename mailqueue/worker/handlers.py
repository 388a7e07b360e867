"""
Job handler registry and implementations.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or lease expiry.

Handlers signal failure by raising: TransientError for failures worth
retrying, PermanentError for failures that will not go away. Any other
exception is treated as transient.
"""

import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import ValidationError

from mailqueue.config import get_settings
from mailqueue.constants import JOB_KIND_EMAIL, SPAN_SEND_EMAIL
from mailqueue.errors import ExecutionError, PermanentError, UnknownJobKind
from mailqueue.observability.tracing import get_tracer
from mailqueue.types.job import EmailMessage, EmailPayload, JobContext, JobResult
from mailqueue.worker.transport import get_mail_transport

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[None]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(kind: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        kind: The job kind this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("email")
        async def handle_email(context: JobContext) -> None:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[kind] = handler
        logger.debug(f"Registered handler for job kind: {kind}")
        return handler
    return decorator


def get_handler(kind: str) -> JobHandler:
    """
    Get the handler for a job kind.

    Raises:
        UnknownJobKind: If no handler is registered for the kind.
    """
    try:
        return _handlers[kind]
    except KeyError:
        raise UnknownJobKind(kind) from None


def list_handlers() -> list[str]:
    """List all registered job kinds."""
    return list(_handlers.keys())


def build_email_message(payload: EmailPayload, sender: str) -> EmailMessage:
    """Render an email payload into a plain-text message."""
    text = f"{payload.title}\n\n{payload.body}" if payload.title else payload.body
    return EmailMessage(
        sender=sender,
        to=payload.to,
        subject=payload.subject,
        text=text,
    )


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler(JOB_KIND_EMAIL)
async def handle_email(context: JobContext) -> None:
    """
    Send an email through the configured mail transport.

    Payload should contain:
    - to: Recipient address
    - subject: Subject line
    - title: Heading placed above the body
    - body: Plain-text body
    """
    try:
        payload = EmailPayload.model_validate(context.payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise PermanentError(f"Invalid email payload: {fields}") from e

    message = build_email_message(payload, sender=get_settings().mail_from)

    logger.info(
        "Sending email",
        extra={
            "job_id": str(context.job_id),
            "to": payload.to,
            "attempt": context.attempt,
            "last_attempt": context.is_last_attempt,
        },
    )

    with get_tracer().start_as_current_span(SPAN_SEND_EMAIL) as span:
        span.set_attribute("job_id", str(context.job_id))
        await get_mail_transport().send(message)


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its kind.

    Never raises: every outcome is folded into the JobResult, with
    retryable telling the caller whether another attempt makes sense.

    Args:
        context: The job context.

    Returns:
        JobResult describing the outcome.
    """
    start = time.perf_counter()

    def elapsed_ms() -> float:
        return (time.perf_counter() - start) * 1000

    try:
        handler = get_handler(context.kind)
        await handler(context)
    except ExecutionError as e:
        log = logger.warning if e.retryable else logger.error
        log(
            f"Job handler failed: {e}",
            extra={"job_id": str(context.job_id), "kind": context.kind, "retryable": e.retryable},
        )
        return JobResult(
            success=False,
            error=str(e),
            retryable=e.retryable,
            duration_ms=elapsed_ms(),
        )
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "kind": context.kind},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e!r}",
            retryable=True,
            duration_ms=elapsed_ms(),
        )

    return JobResult(success=True, duration_ms=elapsed_ms())
