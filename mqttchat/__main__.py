"""
Terminal chat client.

Connects to the configured broker, prints the conversation and typing
peers, and sends every line typed on stdin. Type /quit or press Ctrl+C to
exit.
"""
import argparse
import asyncio
import signal
import sys

from .config import ChatConfig, generate_client_id
from .log import log, set_verbose
from .session import SessionManager
from .state import StateChange
from .transport import MqttTransport

shutdown_requested = None


def signal_handler():
    log("Shutdown requested, closing chat session...")
    shutdown_requested.set()


async def register_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # e.g. Windows
            log("Warning: Signal handlers not fully supported on this platform.")


def make_printer(session: SessionManager):
    printed = 0

    def on_change(state, change):
        nonlocal printed
        if change == StateChange.MESSAGES:
            for msg in state.message_log[printed:]:
                who = "me" if msg.sender == session.client_id else msg.sender
                print(f"{who}: {msg.text}")
            printed = len(state.message_log)
        elif change == StateChange.TYPING:
            if state.typing_peers:
                print(f"{', '.join(sorted(state.typing_peers))} is typing…")
        elif change == StateChange.STATUS:
            print(f"[{state.connection_status}]")

    return on_change


async def open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def read_input(session: SessionManager):
    stdin = await open_stdin()
    while not shutdown_requested.is_set():
        line = await stdin.readline()
        if not line:
            break
        text = line.decode("utf-8", errors="replace").rstrip("\r\n")
        if text == "/quit":
            break
        if not session.is_connected:
            log("Not connected, message not sent.")
            continue
        session.notify_local_typing(text)
        session.send_message(text)
        session.notify_local_typing("")
    shutdown_requested.set()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="mqttchat", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--config", default="chat_config.json", help="path of the JSON config file")
    parser.add_argument("--broker", help="known broker name or host name")
    parser.add_argument("--topic", help="chat topic")
    parser.add_argument("--verbose", "-v", action="count", default=None)
    return parser.parse_args(argv)


async def main(argv=None):
    global shutdown_requested
    args = parse_args(argv)
    config = ChatConfig(args.config)
    config.load()
    if args.broker:
        config.mqtt_broker = args.broker
    if args.topic:
        config.topic = args.topic
    set_verbose(args.verbose if args.verbose is not None else config.verbose)

    shutdown_requested = asyncio.Event()
    await register_signal_handlers()

    transport = MqttTransport(
        reconnect_delay=config.reconnect_delay,
        reconnect_max_delay=config.reconnect_max_delay,
    )
    session = SessionManager(
        transport,
        client_id=generate_client_id(config.client_prefix),
        topic=config.topic,
        endpoint=config.endpoint(),
        quiet_interval=config.typing_quiet_interval,
    )
    session.add_listener(make_printer(session))
    log(f"Starting chat as {session.client_id} on '{session.topic}' (type /quit to exit)")

    dispatcher = asyncio.create_task(session.run())
    session.connect()
    reader = asyncio.create_task(read_input(session))
    try:
        await shutdown_requested.wait()
    finally:
        session.disconnect()
        await transport.wait_closed()
        dispatcher.cancel()
        try:
            await dispatcher
        except asyncio.CancelledError:
            pass
        reader.cancel()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log("KeyboardInterrupt received, stopping.")


if __name__ == "__main__":
    run()
