from __future__ import annotations

from typing import Any, Mapping

from .config_schema import AppConfig
from .driver import ExhaustionCause, RunOutcome, TerminalReason
from .errors import ErrorKind


def _failure_advice(kind: ErrorKind | None, config: AppConfig) -> tuple[str, list[str]]:
    if kind is ErrorKind.RATE_LIMITED:
        return (
            f"The platform kept rate limiting after {config.backoff.max_page_retries} retries.",
            [
                "Lower rate_limit.requests_per_window or raise rate_limit.window_seconds.",
                "Increase backoff.max_page_retries or backoff.max_delay_seconds.",
                "Resume later with --resume; the checkpoint keeps the cursor and seen posts.",
            ],
        )
    if kind is ErrorKind.TRANSIENT_NETWORK:
        return (
            "Network requests kept failing.",
            [
                "Check connectivity and http.proxy.",
                "Increase http.request_timeout_seconds for slow links.",
            ],
        )
    if kind is ErrorKind.MALFORMED_PAGE:
        return (
            "Result pages did not contain any recognizable structure.",
            [
                "The platform may have rotated its GraphQL query ids; update http.graphql_query_ids.",
                "Inspect run.log for the failing URL.",
            ],
        )
    if kind is ErrorKind.AUTH_EXPIRED:
        return (
            "The session could not be (re)authenticated.",
            [
                f"Check the bearer token in ${config.session.bearer_token_env}.",
                f"If set, check the auth_token cookie in ${config.session.auth_token_env}.",
                "Increase session.max_auth_refreshes if refreshes are flaky.",
            ],
        )
    if kind is ErrorKind.FATAL_HTTP:
        return (
            "The platform rejected the query itself.",
            [
                "Check that the user, post or search term exists and is not protected.",
            ],
        )
    return ("The run failed.", [])


def build_run_report(outcome: RunOutcome, config: AppConfig) -> dict[str, Any]:
    """
    Summarize how a run ended, with concrete config knobs to turn where it helps.
    """
    stats = outcome.stats
    details: dict[str, Any] = {
        "reason": outcome.reason.value,
        "error_kind": outcome.error_kind.value if outcome.error_kind else None,
        "cause": outcome.cause.value if outcome.cause else None,
        "pages": stats.pages,
        "emitted": stats.emitted,
        "duplicates": stats.duplicates,
        "malformed_records": stats.malformed_records,
        "retries": stats.retries,
        "rate_limited": stats.rate_limited,
        "auth_refreshes": stats.auth_refreshes,
    }
    if outcome.message:
        details["message"] = outcome.message

    recommendations: list[str] = []
    summary = f"Run stopped ({outcome.reason.value})."

    if outcome.reason is TerminalReason.EXHAUSTED:
        cause = outcome.cause
        if cause is ExhaustionCause.NO_CURSOR:
            summary = f"Reached the end of the results after {stats.pages} pages ({stats.emitted} posts)."
        elif cause is ExhaustionCause.EMPTY_PAGES:
            threshold = config.pagination.empty_page_threshold
            details["empty_page_threshold"] = threshold
            summary = f"Stopped after {threshold} consecutive pages without new posts ({stats.emitted} posts)."
            recommendations = [
                "Raise pagination.empty_page_threshold if the platform pads timelines with repeats.",
            ]
        elif cause is ExhaustionCause.CURSOR_REGRESSION:
            summary = f"The platform returned a stale cursor; stopped to avoid looping ({stats.emitted} posts)."
            recommendations = [
                "Re-run later; the platform sometimes serves cached cursors for a while.",
            ]
        elif cause is ExhaustionCause.MAX_PAGES:
            details["max_pages"] = config.pagination.max_pages
            summary = f"Reached the page cap ({stats.pages} pages, {stats.emitted} posts)."
            recommendations = [
                "Increase pagination.max_pages, or continue with --resume.",
            ]

    elif outcome.reason is TerminalReason.CANCELLED:
        summary = f"Run was cancelled after {stats.pages} pages ({stats.emitted} posts)."
        recommendations = ["Continue with --resume to pick up from the last checkpoint."]

    else:
        summary, recommendations = _failure_advice(outcome.error_kind, config)

    if outcome.warnings:
        details["warnings"] = list(outcome.warnings)

    return {
        "status": outcome.reason.value,
        "summary": summary,
        "details": details,
        "recommendations": recommendations,
    }


def format_run_report(report: Mapping[str, Any]) -> str:
    status = str(report.get("status") or "").strip() or "unknown"
    summary = str(report.get("summary") or "").strip() or f"Run stopped ({status})."

    lines: list[str] = [summary]
    recs = report.get("recommendations")
    if isinstance(recs, list) and recs:
        lines.append("Recommendations:")
        for r in recs:
            t = str(r or "").strip()
            if t:
                lines.append(f"- {t}")

    return "\n".join(lines)
