"""Chat-completions client for a local OpenAI-compatible model server."""

import logging
import threading

from .errors import BackendError

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8080"
DEFAULT_TIMEOUT = 600


class ChatClient:
    """Thin wrapper around litellm pointed at ``{server_url}/v1``.

    ``chat_completion`` returns the first choice's message object, which
    exposes ``content`` and ``tool_calls`` (each with ``id`` and
    ``function.name`` / ``function.arguments``).
    """

    def __init__(
        self,
        server_url: str = DEFAULT_SERVER_URL,
        model: str = "local-model",
        *,
        temperature: float = 0.7,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.server_url = server_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.timeout = timeout

    def chat_completion(self, messages: list[dict], tools: list | None = None):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=f"openai/{self.model}",
            api_base=f"{self.server_url}/v1",
            api_key="sk-no-key-required",
            messages=messages,
            temperature=self.temperature,
            timeout=self.timeout,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            status = getattr(e, "status_code", None)
            if status is not None:
                raise BackendError(f"model server error {status}: {e}", status) from e
            raise BackendError(f"failed to reach model server: {e}") from e

        choices = getattr(response, "choices", None)
        if not choices:
            raise BackendError("no response from model server (empty choices)")
        return choices[0].message

    def warm_up(self) -> threading.Thread:
        """Send a tiny prompt in the background so the model is loaded.

        The reply is discarded; failures are only logged.
        """

        def _ping():
            try:
                self.chat_completion([{"role": "user", "content": "Hi"}])
            except BackendError as e:
                logger.debug("warm-up request failed: %s", e)

        thread = threading.Thread(target=_ping, name="vork-warmup", daemon=True)
        thread.start()
        return thread
