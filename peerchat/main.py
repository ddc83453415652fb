import argparse
import asyncio

from peerchat.config import Config, configure_logging
from peerchat.network.rtc import aiortc_connection_factory
from peerchat.network.transport import WebSocketSignalingClient
from peerchat.ui.cli import PeerChatCLI, console
from peerchat.utils.error_codes import SignalingUnavailable


async def run(config, nickname=None, join_id=None):
    signaling = WebSocketSignalingClient(config.signaling_url)
    try:
        await signaling.connect()
    except SignalingUnavailable as e:
        console.print(f"[danger]{e.message}[/danger]")
        return
    cli = PeerChatCLI(config, signaling, aiortc_connection_factory(config.ice_servers))
    try:
        await cli.run(nickname=nickname, join_id=join_id)
    finally:
        await signaling.close()


def main():
    parser = argparse.ArgumentParser(description="Direct peer-to-peer terminal chat")
    parser.add_argument("--signaling-url", default=None)
    parser.add_argument("--nickname", default=None)
    parser.add_argument("--join", metavar="CHAT_ID", default=None)
    parser.add_argument("--negotiation-timeout", type=float, default=None)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    config = Config.from_env().with_overrides(
        signaling_url=args.signaling_url,
        negotiation_timeout=args.negotiation_timeout,
        log_level=args.log_level,
    )
    configure_logging(config.log_level)
    try:
        asyncio.run(run(config, nickname=args.nickname, join_id=args.join))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Fatal Error: {e}")


if __name__ == "__main__":
    main()
