import asyncio
from typing import Optional, Set

from .config import debug_print
from .errors import BridgeError


class ConversationCleaner:
    """
    Fire-and-forget deletion of upstream conversations.

    Each scheduled deletion runs as its own task, retries a few times with a
    short delay, and always closes the client it was handed. Failures are only
    logged. ``wait_idle`` lets callers (tests, shutdown) observe completion.
    """

    def __init__(self, *, max_attempts: int = 3, retry_delay_seconds: float = 1.0) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self._tasks: Set[asyncio.Task] = set()
        self.deleted = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, client, conversation_id: str) -> asyncio.Task:  # noqa: ANN001
        task = asyncio.create_task(self._delete_with_retry(client, conversation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _delete_with_retry(self, client, conversation_id: str) -> bool:  # noqa: ANN001
        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    await client.delete_conversation(conversation_id)
                except BridgeError as e:
                    debug_print(
                        f"⚠️  Failed to delete conversation {conversation_id} "
                        f"(attempt {attempt}/{self.max_attempts}): {e}"
                    )
                    if attempt < self.max_attempts:
                        await asyncio.sleep(self.retry_delay_seconds)
                    continue
                self.deleted += 1
                debug_print(f"🗑️  Deleted conversation {conversation_id}")
                return True
            self.failed += 1
            debug_print(f"❌ Giving up on deleting conversation {conversation_id}")
            return False
        finally:
            try:
                await client.aclose()
            except Exception as e:
                debug_print(f"⚠️  Error closing upstream client: {e}")

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout_seconds: Optional[float] = 10.0) -> None:
        if not self._tasks:
            return
        debug_print(f"🧹 Waiting for {len(self._tasks)} pending conversation deletion(s)...")
        try:
            await asyncio.wait_for(self.wait_idle(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            for task in list(self._tasks):
                task.cancel()
            debug_print("⚠️  Cleanup did not finish before shutdown; pending deletions cancelled")
