"""
Basic usage examples for Chatgate.

Runs against a local mock upstream, so no network access or keys are needed.
"""

import asyncio
import json

import httpx

from chatgate import (
    GatewayConfig,
    Identity,
    StaticAuthProvider,
    create_gateway,
    GatewayError,
)


def mock_upstream(request: httpx.Request) -> httpx.Response:
    """Stand-in for the edge functions: DeepSeek streams, the rest answer in one body."""
    if request.url.path.endswith("/deepseek-chat"):
        frames = [
            f"data: {json.dumps({'choices': [{'delta': {'content': word}}]})}\n\n"
            for word in ["Streams ", "arrive ", "one ", "piece ", "at ", "a ", "time."]
        ]
        return httpx.Response(200, content="".join(frames).encode() + b"data: [DONE]\n\n")
    return httpx.Response(200, json={"response": "Batch backends answer all at once."})


async def example_streaming(gateway, identity):
    """Stream an answer chunk by chunk."""
    print("=" * 60)
    print("Example 1: Streaming")
    print("=" * 60)

    messages = [{"role": "user", "content": "How do streams work?"}]
    async for event in gateway.send(messages, "DeepSeek-V3", identity):
        if event.type == "chunk":
            print(event.text, end="", flush=True)
        elif event.type == "complete":
            print(f"\n[complete, {len(event.text)} chars from {event.model}]")
        else:
            print(f"\n[error {event.kind.value}] {event.message}")
    print()


async def example_batch(gateway, identity):
    """Use the single-turn helper with a batch backend."""
    print("=" * 60)
    print("Example 2: Batch backend")
    print("=" * 60)

    result = await gateway.complete(
        [{"role": "user", "content": "Summarize this in one line."}],
        "mistral-small-latest",
        identity,
    )
    print(result.text)
    print()


async def example_quota(gateway, identity):
    """Show the anonymous quota in action."""
    print("=" * 60)
    print("Example 3: Anonymous quota")
    print("=" * 60)

    messages = [{"role": "user", "content": "One more?"}]
    while True:
        try:
            await gateway.complete(messages, "DeepSeek-V3", identity)
        except GatewayError as exc:
            print(f"Stopped: {exc.kind.value} ({exc.message})")
            break

    usage = await gateway.gate.usage(identity, identity.is_authenticated)
    print(f"Used {usage['count']} of {usage['limit']}, resets at {usage['reset_at']}")
    print()


async def main():
    config = GatewayConfig(base_url="http://upstream.local", burst_window_seconds=0.0)
    async with httpx.AsyncClient(transport=httpx.MockTransport(mock_upstream)) as client:
        gateway = create_gateway(config=config, auth_provider=StaticAuthProvider(None), client=client)
        identity = Identity(client_id="example-browser", fingerprint="fp_example")

        await example_streaming(gateway, identity)
        await example_batch(gateway, identity)
        await example_quota(gateway, identity)


if __name__ == "__main__":
    asyncio.run(main())
