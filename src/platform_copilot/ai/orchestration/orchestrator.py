"""Turn-level orchestration of the conversation core.

``ChatOrchestrator.process_message`` runs one turn end to end:

1. fetch or create the conversation,
2. build the token-budgeted history window,
3. assemble the prompt and attribute tokens per component,
4. invoke the completion with bounded retries and cooperative cancellation,
5. interpret capability calls and completion usage,
6. analyse the completion for missing required information,
7. record the exchange and the invoked capabilities,
8. rank proactive suggestions.

Provider failures never escape as exceptions; every turn yields a
:class:`ChatResponse`. Raw task cancellation still propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from ...services import telemetry
from ...services.settings import Settings
from .. import prompts
from ..ai_types import CompletionProvider, CompletionSettings, ModelTokenCounter
from ..capabilities import CapabilityRegistry
from ..client import TokenCounterRegistry, build_provider
from ..errors import ErrorKind, ProviderMisconfiguredError
from .completion_invoker import CANCELLED_MESSAGE, CompletionInvoker, RetryPolicy
from .conversation_store import ConversationStore
from .follow_up import FollowUpAnalyzer
from .history_builder import HistoryBuilder, HistoryOptions
from .prompt_assembler import PromptAssembler
from .response_interpreter import ResponseInterpreter, select_metadata_adapter
from .suggestions import SuggestionEngine
from .types import (
    CapabilityCall,
    ChatResponse,
    MessageSnapshot,
    MissingInformationAnalysis,
    TokenUsageMetrics,
    TurnStatus,
)

__all__ = ["ChatOrchestrator", "INTENT_CAPABILITY", "INTENT_CONVERSATIONAL", "INTENT_CANCELLED", "INTENT_ERROR"]

LOGGER = logging.getLogger(__name__)

INTENT_CAPABILITY = "capability_execution"
INTENT_CONVERSATIONAL = "conversational"
INTENT_CANCELLED = "cancelled"
INTENT_ERROR = "error"

_UNEXPECTED_ERROR_MESSAGE = (
    "I apologize, but I encountered an error while processing your request. "
    "Please try rephrasing your question, or try again in a moment."
)
_MISCONFIGURED_MESSAGE = (
    "I'm sorry, the AI completion service is not configured, so I can't answer right now. "
    "Configure an OpenAI-compatible endpoint, model and API key, then try again."
)


class ChatOrchestrator:
    """Coordinates one chat turn across the orchestration components.

    Collaborators default to instances built from ``settings``; tests inject their own.
    The orchestrator itself keeps no per-turn state, so concurrent turns are safe.
    """

    def __init__(
        self,
        provider: CompletionProvider | None,
        *,
        settings: Settings | None = None,
        counter: ModelTokenCounter | None = None,
        store: ConversationStore | None = None,
        capabilities: CapabilityRegistry | None = None,
        history_builder: HistoryBuilder | None = None,
        assembler: PromptAssembler | None = None,
        invoker: CompletionInvoker | None = None,
        interpreter: ResponseInterpreter | None = None,
        follow_up: FollowUpAnalyzer | None = None,
        suggestions: SuggestionEngine | None = None,
        telemetry_sink: telemetry.TelemetrySink | None = None,
    ) -> None:
        self._settings = settings if settings is not None else Settings()
        self._provider = provider
        self._counter = counter if counter is not None else TokenCounterRegistry.global_instance()
        self._capabilities = capabilities
        self._store = store if store is not None else ConversationStore(
            self._settings.store,
            max_messages=self._settings.history.max_stored_messages,
        )
        self._history = history_builder if history_builder is not None else HistoryBuilder(self._counter)
        self._assembler = assembler if assembler is not None else PromptAssembler(
            self._counter,
            include_rag_context=self._settings.include_rag_context,
        )
        self._invoker = invoker if invoker is not None else CompletionInvoker(
            provider,
            policy=RetryPolicy.from_settings(self._settings.retry),
            capabilities=capabilities,
        )
        self._interpreter = interpreter if interpreter is not None else ResponseInterpreter(
            select_metadata_adapter(self._settings.metadata_adapter),
            counter=self._counter,
        )
        self._follow_up = (
            follow_up if follow_up is not None else FollowUpAnalyzer(provider, settings=self._settings.follow_up)
        )
        self._suggestions = suggestions if suggestions is not None else SuggestionEngine()
        self._telemetry_sink = telemetry_sink

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        capabilities: CapabilityRegistry | None = None,
        counter: ModelTokenCounter | None = None,
        telemetry_sink: telemetry.TelemetrySink | None = None,
    ) -> "ChatOrchestrator":
        """Build an orchestrator with an OpenAI-compatible provider.

        A missing API key or model does not raise; turns then answer with a
        misconfiguration response until settings are fixed.
        """

        try:
            provider: CompletionProvider | None = build_provider(settings)
        except ProviderMisconfiguredError as exc:
            LOGGER.warning("Completion provider unavailable: %s", exc)
            provider = None
        return cls(
            provider,
            settings=settings,
            counter=counter,
            capabilities=capabilities,
            telemetry_sink=telemetry_sink,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def has_provider(self) -> bool:
        return self._provider is not None

    async def process_message(
        self,
        message: str,
        conversation_id: str,
        *,
        user_id: str | None = None,
        rag_snippets: Sequence[str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatResponse:
        started = time.perf_counter()
        model_name = self._settings.model
        LOGGER.info("Processing message for conversation %s", conversation_id)
        try:
            return await self._process(
                message,
                conversation_id,
                user_id=user_id,
                rag_snippets=rag_snippets,
                cancel_event=cancel_event,
                started=started,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.error("Chat turn failed for conversation %s", conversation_id, exc_info=True)
            telemetry.emit(
                "chat_turn.failed",
                {"conversation_id": conversation_id, "error_kind": ErrorKind.PROVIDER_ERROR.value, "error": str(exc)},
            )
            return ChatResponse(
                conversation_id=conversation_id,
                content=_UNEXPECTED_ERROR_MESSAGE,
                success=False,
                status=TurnStatus.ERROR,
                intent_type=INTENT_ERROR,
                processing_time_ms=_elapsed_ms(started),
                model=model_name,
                error_kind=ErrorKind.PROVIDER_ERROR,
            )

    async def _process(
        self,
        message: str,
        conversation_id: str,
        *,
        user_id: str | None,
        rag_snippets: Sequence[str] | None,
        cancel_event: asyncio.Event | None,
        started: float,
    ) -> ChatResponse:
        settings = self._settings
        model_name = settings.model
        context = self._store.get_or_create(conversation_id, user_id=user_id)

        if self._provider is None:
            LOGGER.error("No completion provider configured; cannot answer conversation %s", conversation_id)
            telemetry.emit(
                "chat_turn.failed",
                {"conversation_id": conversation_id, "error_kind": ErrorKind.PROVIDER_MISCONFIGURED.value},
            )
            return ChatResponse(
                conversation_id=conversation_id,
                content=_MISCONFIGURED_MESSAGE,
                success=False,
                status=TurnStatus.ERROR,
                intent_type=INTENT_ERROR,
                processing_time_ms=_elapsed_ms(started),
                model=model_name,
                error_kind=ErrorKind.PROVIDER_MISCONFIGURED,
            )

        history = self._history.build(
            context.messages,
            HistoryOptions.from_settings(settings.history, model_name=model_name),
        )
        assembled = self._assembler.assemble(
            settings.system_prompt or prompts.base_system_prompt(),
            rag_snippets,
            history,
            message,
            model_name=model_name,
        )
        completion_settings = CompletionSettings(
            model=model_name,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            capability_dispatch=settings.capability_dispatch,
        )
        result = await self._invoker.invoke(
            assembled.to_messages(),
            completion_settings,
            cancel_event=cancel_event,
        )
        metrics = assembled.metrics

        if result.cancelled:
            LOGGER.info("Turn cancelled for conversation %s", conversation_id)
            telemetry.emit(
                "chat_turn.cancelled",
                {"conversation_id": conversation_id, "attempts": result.attempts},
            )
            return ChatResponse(
                conversation_id=conversation_id,
                content=CANCELLED_MESSAGE,
                success=False,
                status=TurnStatus.CANCELLED,
                intent_type=INTENT_CANCELLED,
                token_usage=metrics,
                processing_time_ms=_elapsed_ms(started),
                model=model_name,
                error_kind=ErrorKind.USER_CANCELLED,
            )

        if not result.succeeded:
            error_kind = result.error_kind or ErrorKind.PROVIDER_ERROR
            telemetry.emit(
                "chat_turn.failed",
                {
                    "conversation_id": conversation_id,
                    "error_kind": error_kind.value,
                    "attempts": result.attempts,
                },
            )
            return ChatResponse(
                conversation_id=conversation_id,
                content=result.content,
                success=False,
                status=TurnStatus.ERROR,
                intent_type=INTENT_ERROR,
                token_usage=metrics,
                processing_time_ms=_elapsed_ms(started),
                model=model_name,
                error_kind=error_kind,
            )

        calls = self._interpreter.extract_capability_calls(result) or []
        metrics.record_completion(
            self._interpreter.extract_completion_tokens(result, model_name=model_name),
            max_context_window=self._counter.max_context_window(model_name),
        )
        last_capability = calls[-1].name if calls else None

        follow_up = await self._follow_up.analyze(
            result.content,
            model_name=model_name,
            capability_name=last_capability,
            recent_messages=[*context.messages, MessageSnapshot.user(message)],
            cancel_event=cancel_event,
        )

        updated = self._store.update(
            conversation_id,
            [
                MessageSnapshot.user(message),
                MessageSnapshot.assistant(result.content, capability_name=last_capability),
            ],
            capability_names=[call.name for call in calls],
        )
        suggestions = self._suggestions.suggest(updated.used_capabilities, updated.messages)

        response = ChatResponse(
            conversation_id=conversation_id,
            content=result.content,
            success=True,
            status=TurnStatus.SUCCESS,
            intent_type=INTENT_CAPABILITY if calls else INTENT_CONVERSATIONAL,
            capability_calls=tuple(calls),
            follow_up=follow_up,
            suggestions=tuple(suggestions),
            token_usage=metrics,
            processing_time_ms=_elapsed_ms(started),
            model=model_name,
        )
        self._record_usage(conversation_id, metrics, calls, follow_up, response.processing_time_ms)
        return response

    def _record_usage(
        self,
        conversation_id: str,
        metrics: TokenUsageMetrics,
        calls: Sequence[CapabilityCall],
        follow_up: MissingInformationAnalysis,
        processing_time_ms: float,
    ) -> None:
        LOGGER.info("Turn completed for %s: %s", conversation_id, metrics.compact_summary())
        event = telemetry.TurnUsageEvent(
            conversation_id=conversation_id,
            model=metrics.model_name,
            system_prompt_tokens=metrics.system_prompt_tokens,
            rag_context_tokens=metrics.rag_context_tokens,
            history_tokens=metrics.history_tokens,
            user_prompt_tokens=metrics.user_prompt_tokens,
            completion_tokens=metrics.completion_tokens,
            total_tokens=metrics.total_tokens,
            utilization=metrics.utilization,
            capability_names=tuple(call.name for call in calls),
        )
        if self._telemetry_sink is not None:
            try:
                self._telemetry_sink.record(event)
            except Exception:  # pragma: no cover - defensive guard
                LOGGER.debug("Telemetry sink rejected usage event", exc_info=True)
        payload = event.to_payload()
        payload["processing_time_ms"] = processing_time_ms
        payload["requires_follow_up"] = follow_up.requires_follow_up
        telemetry.emit("chat_turn.completed", payload)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
