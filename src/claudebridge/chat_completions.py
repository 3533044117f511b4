import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import AsyncIterator, Callable, List, Optional

import httpx
from fastapi import HTTPException
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .claude_client import ClaudeWebClient, build_client
from .cleanup import ConversationCleaner
from .config import DEFAULT_MODEL, debug_print, mask_secret
from .errors import BridgeError, ClientDisconnected, ConfigurationError, StreamError
from .pool import Credential, CredentialPool, retry_count_for
from .prompt import ChatMessage, build_big_context_prompt, build_prompt, decode_messages
from .streaming import (
    SSE_DONE,
    ClaudeStreamTranslator,
    DisconnectCheck,
    collect_completion,
    format_sse,
    iter_openai_stream,
    openai_error_payload,
    prime_stream,
)

ClientFactory = Callable[[str, dict], ClaudeWebClient]

EXHAUSTED_MESSAGE = "Failed to process request after multiple attempts"

# "client closed request"
CLIENT_CLOSED_REQUEST = 499


@dataclass
class ChatRequest:
    model: str
    messages: List[ChatMessage] = field(default_factory=list)
    stream: bool = True


def parse_chat_request(body, default_model: str = DEFAULT_MODEL) -> ChatRequest:  # noqa: ANN001
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    model = body.get("model")
    if not isinstance(model, str) or not model.strip():
        model = default_model

    raw_messages = body.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise HTTPException(status_code=400, detail="No messages provided")

    stream = body.get("stream", True)
    if not isinstance(stream, bool):
        stream = True

    return ChatRequest(model=model.strip(), messages=decode_messages(raw_messages), stream=stream)


def exhausted_response() -> JSONResponse:
    return JSONResponse(
        status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
        content=openai_error_payload(EXHAUSTED_MESSAGE, "server_error", HTTPStatus.INTERNAL_SERVER_ERROR),
    )


class ChatCompletionService:
    """
    Serves one chat completion by rotating through pool credentials.

    Every attempt uses a fresh upstream client. An attempt only commits to the
    caller once the first translated frame exists (streaming) or the whole
    body was read (non-streaming); anything that fails earlier moves on to
    the next credential.
    """

    def __init__(
        self,
        pool: CredentialPool,
        config: dict,
        cleaner: ConversationCleaner,
        client_factory: Optional[ClientFactory] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.pool = pool
        self.config = config
        self.cleaner = cleaner
        self.client_factory = client_factory or build_client
        self.max_attempts = max_attempts if max_attempts is not None else retry_count_for(pool)

    def for_credential(self, credential: Credential) -> "ChatCompletionService":
        return ChatCompletionService(
            CredentialPool([credential]),
            self.config,
            self.cleaner,
            client_factory=self.client_factory,
            max_attempts=1,
        )

    async def _release(self, client: Optional[ClaudeWebClient], conversation_id: Optional[str]) -> None:
        if client is None:
            return
        if conversation_id and self.config.get("chat_delete", True):
            self.cleaner.schedule(client, conversation_id)
            return
        try:
            await client.aclose()
        except Exception as e:
            debug_print(f"⚠️  Error closing upstream client: {e}")

    async def _stream_body(
        self,
        translator: ClaudeStreamTranslator,
        lines: AsyncIterator[str],
        pending: List[str],
        exhausted: bool,
        response: httpx.Response,
        client: ClaudeWebClient,
        conversation_id: str,
        is_disconnected: DisconnectCheck,
    ) -> AsyncIterator[str]:
        try:
            async for frame in iter_openai_stream(
                translator,
                lines,
                pending=pending,
                exhausted=exhausted,
                is_disconnected=is_disconnected,
            ):
                yield frame
        except StreamError as e:
            debug_print(f"❌ Stream broke after the response started: {e}")
            yield format_sse(openai_error_payload(str(e), "upstream_error", HTTPStatus.BAD_GATEWAY))
            yield SSE_DONE
        finally:
            try:
                await response.aclose()
            finally:
                await self._release(client, conversation_id)

    async def complete(self, chat_request: ChatRequest, is_disconnected: DisconnectCheck = None) -> Response:
        bundle = build_prompt(
            chat_request.messages,
            disable_artifacts=bool(self.config.get("prompt_disable_artifacts")),
            no_role_prefix=bool(self.config.get("no_role_prefix")),
        )
        limit = self.config.get("max_chat_history_length")
        debug_print(
            f"🌊 Stream={chat_request.stream} | 🤖 Model={chat_request.model} | "
            f"💬 Messages={len(chat_request.messages)}"
        )

        for attempt in range(1, self.max_attempts + 1):
            client: Optional[ClaudeWebClient] = None
            conversation_id: Optional[str] = None
            response: Optional[httpx.Response] = None
            committed = False
            try:
                credential = self.pool.next_credential()
                debug_print(
                    f"🔄 Attempt {attempt}/{self.max_attempts} with session {mask_secret(credential.session_key, 20)}"
                )
                client = self.client_factory(credential.session_key, self.config)

                organization_id = await self.pool.resolve_organization(credential, client)
                client.set_organization_id(organization_id)

                if bundle.images:
                    await client.upload_files(bundle.images)

                prompt = bundle.prompt
                if limit and bundle.exceeds(limit):
                    debug_print(f"📎 Prompt is {bundle.size} bytes, sending history as context.txt")
                    client.set_big_context(bundle.prompt)
                    prompt = build_big_context_prompt(
                        disable_artifacts=bool(self.config.get("prompt_disable_artifacts"))
                    )

                conversation_id = await client.create_conversation(chat_request.model)
                response = await client.send_message(conversation_id, prompt)
                lines = client.aiter_lines(response)

                if chat_request.stream:
                    translator = ClaudeStreamTranslator(chat_request.model, stream=True)
                    pending, exhausted = await prime_stream(translator, lines, is_disconnected)
                    committed = True
                    return StreamingResponse(
                        self._stream_body(
                            translator,
                            lines,
                            pending,
                            exhausted,
                            response,
                            client,
                            conversation_id,
                            is_disconnected,
                        ),
                        media_type="text/event-stream",
                    )

                translator = ClaudeStreamTranslator(chat_request.model, stream=False)
                completion = await collect_completion(translator, lines, is_disconnected)
                debug_print(f"✅ Completion finished: {len(translator.text)} chars")
                return JSONResponse(content=completion)

            except ClientDisconnected:
                debug_print("🔌 Client closed connection before the response started")
                return Response(status_code=CLIENT_CLOSED_REQUEST)
            except ConfigurationError as e:
                debug_print(f"❌ {e}")
                break
            except (BridgeError, httpx.HTTPError) as e:
                debug_print(f"⚠️  Attempt {attempt}/{self.max_attempts} failed: {type(e).__name__}: {e}")
                continue
            finally:
                # A committed streaming attempt hands response and client to its body generator.
                if not committed:
                    if response is not None:
                        await response.aclose()
                    await self._release(client, conversation_id)

        debug_print(f"❌ All {self.max_attempts} attempt(s) failed")
        return exhausted_response()


async def read_json_body(request) -> dict:  # noqa: ANN001
    try:
        return await request.json()
    except json.JSONDecodeError as e:
        debug_print(f"❌ Invalid JSON in request body: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid JSON in request body: {str(e)}")
