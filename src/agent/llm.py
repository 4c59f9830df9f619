"""Reasoning backend: Gemini 2.5 Flash via the google-genai SDK."""

import os

from google import genai

MODEL = os.environ.get("VOICE_COACH_MODEL", "gemini-2.5-flash")


class BackendError(RuntimeError):
    """The reasoning backend could not produce a reply."""


def get_client() -> genai.Client:
    """Create a Gemini client using the API key from environment."""
    api_key = os.environ.get("GEMINI_API_KEY")
    if not api_key:
        raise ValueError("GEMINI_API_KEY not set in environment")
    return genai.Client(api_key=api_key)


class GeminiBackend:
    """Stateless text-in, text-out wrapper around one Gemini client.

    The client is created lazily so that constructing a session never needs
    an API key; the first ``generate`` call does.
    """

    def __init__(self, client: genai.Client | None = None, model: str | None = None):
        self._client = client
        self.model = model or MODEL

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    def generate(self, prompt: str, *, system_instruction: str | None = None, temperature: float = 0.1) -> str:
        """Send one user prompt and return the reply text.

        Raises:
            ValueError: GEMINI_API_KEY is missing.
            BackendError: the call failed or came back empty.
        """
        client = self.client
        try:
            response = client.models.generate_content(
                model=self.model,
                contents=[
                    genai.types.Content(
                        role="user",
                        parts=[genai.types.Part(text=prompt)],
                    ),
                ],
                config=genai.types.GenerateContentConfig(
                    temperature=temperature,
                    system_instruction=system_instruction,
                ),
            )
        except Exception as exc:
            raise BackendError(f"Gemini call failed: {exc}") from exc

        text = getattr(response, "text", None)
        if not text or not text.strip():
            raise BackendError("Gemini returned an empty reply")
        return text.strip()
