"""Interactive console chat against the conversation core, without the HTTP layer."""

import asyncio
import sys

from config import AI_NAME, config
from gateway.conversation_service import ConversationService
from gateway.events import EventEmitter
from gateway.protocol import EventMessage, EventType, Frame
from gateway.sinks import OutputSink
from utils.logger import setup_logger


SUGGESTIONS = [
    "Create a new epic for Q1 mobile app features",
    "List all user stories in the current sprint",
    "Show high-priority bugs in my backlog",
    "Plan sprint work items for the next iteration",
    "Generate a project status report",
]

EXIT_WORDS = {"exit", "quit"}


class ConsoleSink(OutputSink):
    """Writes assistant deltas straight to a text stream."""

    def __init__(self, stream=None) -> None:
        super().__init__()
        self.stream = stream or sys.stdout

    def _deliver(self, frame: Frame) -> None:
        if frame.type == "delta":
            self.stream.write(frame.content)
        elif frame.type == "done":
            self.stream.write("\n")
        else:
            self.stream.write(f"\n[error] {frame.message}\n")
        self.stream.flush()


async def async_input(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: input(prompt))


def print_banner() -> None:
    print(f"{AI_NAME} ready! Your AI assistant for Azure Boards work item management.\n")
    print("Try one of these to get started:")
    for suggestion in SUGGESTIONS:
        print(f"   - '{suggestion}'")
    print("\nType your message (Ctrl+C or 'exit' to quit)\n")


async def run_repl(service: ConversationService, stream=None) -> None:
    conversation_id = await service.open_conversation()
    out = stream or sys.stdout
    emitter = service.event_emitter

    def _show_tool(event: EventMessage) -> None:
        if event.payload.get("conversation_id") == conversation_id:
            out.write(f"\n[tool] {event.payload.get('tool_name')}\n")
            out.flush()

    if emitter:
        emitter.on(EventType.TOOL_CALL_START, _show_tool)
    print_banner()
    try:
        while True:
            try:
                line = await async_input("You: ")
            except EOFError:
                break
            text = line.strip()
            if not text:
                continue
            if text.lower() in EXIT_WORDS:
                break
            await service.submit_turn(conversation_id, text, ConsoleSink(stream))
    finally:
        if emitter:
            emitter.off(EventType.TOOL_CALL_START, _show_tool)


async def main() -> None:
    from agentkit.tools.tasks import build_default_registry
    from conversation_core import OpenAIAgentBackend

    setup_logger(log_dir=str(config.system.log_dir), level="WARNING", console=False)
    emitter = EventEmitter()
    backend = OpenAIAgentBackend(
        api_config=config.api,
        tools=build_default_registry(event_emitter=emitter),
        system_prompt=config.prompts.console_prompt,
    )
    service = ConversationService(
        backend, turn_timeout_s=config.turn.timeout_s, event_emitter=emitter
    )
    try:
        await run_repl(service)
    finally:
        print("\nShutting down agent...")
        await service.shutdown()
        await backend.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
