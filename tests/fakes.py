from types import SimpleNamespace

from lesson_tutor.services.inference_gateway import GenerationResult


class FakeGateway:
    """Stands in for InferenceGateway: replays canned replies and records every call."""

    def __init__(self, *replies, on_call=None):
        self.replies = list(replies)
        self.calls = []
        self.on_call = on_call

    async def generate(self, messages, max_tokens=200, temperature=0.0):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "temperature": temperature})
        if self.on_call is not None:
            await self.on_call()
        if not self.replies:
            return GenerationResult(text="", success=False, provider="groq_failed")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, GenerationResult):
            return reply
        return GenerationResult(text=reply, success=True, provider="fake")


def completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


class FakeOpenAI:
    """Minimal ``client.chat.completions.create`` surface of AsyncOpenAI."""

    def __init__(self, handler):
        self.calls = 0
        self._handler = handler
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls += 1
        return await self._handler(self.calls, kwargs)
