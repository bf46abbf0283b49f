"""Interactive streaming chat with tool calls.

Demonstrates:
- Picking a provider and routing text, thinking, and tool calls to sinks
- Answering tool calls and feeding the results back into the transcript
- Prompt-based (XML) tool calling for models without native tool support
- Cancelling a response with Ctrl-C while keeping its partial output

Usage:
    uv run --env-file=.env examples/streaming_chat.py --provider openai --model gpt-4o-mini
    uv run --env-file=.env examples/streaming_chat.py --provider anthropic --model claude-sonnet-4-5 --thinking medium
    uv run examples/streaming_chat.py --provider vllm --url localhost --port 8000 --model Qwen/Qwen3-8B --xml-tools
"""

import argparse
import asyncio
import logging
import signal
import sys

from lmstream import (
    AnthropicProvider,
    CancellationSignal,
    GeminiProvider,
    Message,
    MessageRole,
    ModelProvider,
    OpenAIProvider,
    OpenRouter,
    StreamConfig,
    StreamSinks,
    ToolCallRequestMessage,
    ToolCallResultMessage,
    ToolDefinition,
    VLLMProvider,
    configure_logging,
    parse_arguments,
)


def get_weather(city: str, metric: bool = True):
    """Look up the current weather for a city."""
    unit = "C" if metric else "F"
    return f"Sunny and 21 {unit} in {city}."


TOOLS = {"get_weather": get_weather}


def make_provider(args, config: StreamConfig) -> ModelProvider:
    if args.provider == "openai":
        return OpenAIProvider(config=config, use_responses_api=args.responses)
    if args.provider == "openrouter":
        return OpenRouter(config=config)
    if args.provider == "anthropic":
        return AnthropicProvider(config=config)
    if args.provider == "gemini":
        return GeminiProvider(config=config)
    if args.provider == "vllm":
        if not args.url:
            raise SystemExit("--url is required for vllm provider")
        return VLLMProvider(args.url, args.port, config=config)
    raise SystemExit(f"Unknown provider {args.provider}")


def print_thinking(text: str):
    sys.stdout.write(f"\033[2m{text}\033[0m")
    sys.stdout.flush()


def print_text(text: str):
    sys.stdout.write(text)
    sys.stdout.flush()


async def respond(provider, model, transcript, tools, cancel):
    sinks = StreamSinks(on_text=print_text, on_thinking=print_thinking)
    result = await provider.stream_chat(
        model, transcript, tools=tools, sinks=sinks, cancel=cancel,
    )
    print()
    if result.text:
        transcript.append(Message(role=MessageRole.ASSISTANT, content=result.text))
    return result


async def chat(args):
    config = StreamConfig(
        prompt_based_tool_calling=args.xml_tools,
        thinking=args.thinking,
    )
    provider = make_provider(args, config)
    tools = [ToolDefinition.from_function(fn) for fn in TOOLS.values()]
    transcript = [Message(role=MessageRole.SYSTEM, content="You are a concise assistant.")]

    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        if not line.strip():
            continue
        transcript.append(Message(role=MessageRole.USER, content=line))

        while True:
            cancel = CancellationSignal()
            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGINT, cancel.cancel)
            try:
                result = await respond(provider, args.model, transcript, tools, cancel)
            finally:
                loop.remove_signal_handler(signal.SIGINT)

            if result.cancelled or not result.tool_calls:
                break

            transcript.append(ToolCallRequestMessage(tool_calls=result.tool_calls))
            for call in result.tool_calls:
                output = TOOLS[call.name](**parse_arguments(call.arguments))
                print(f"[{call.name}] {output}")
                transcript.append(ToolCallResultMessage(
                    tool_call_id=call.id, name=call.name, content=output,
                ))


def main():
    parser = argparse.ArgumentParser(description="Streaming chat")
    parser.add_argument(
        "--provider",
        choices=["openai", "openrouter", "anthropic", "gemini", "vllm"],
        default="openai",
    )
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--url", default=None)
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--responses", action="store_true", help="Use the OpenAI Responses API")
    parser.add_argument("--xml-tools", action="store_true", help="Describe tools in the prompt")
    parser.add_argument("--thinking", default=None, choices=["none", "low", "medium", "high", "auto"])
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    configure_logging(level=logging.DEBUG if args.debug else logging.WARNING)
    asyncio.run(chat(args))


if __name__ == "__main__":
    main()
