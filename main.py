import asyncio
import logging
import signal

from dotenv import load_dotenv

from dstealth.core.agent import StealthAgent
from dstealth.core.config import Settings
from dstealth.core.errors import ConfigError, TransportError
from dstealth.core.intents import IntentClassifier
from dstealth.core.profiles import ProfileStore
from dstealth.core.responses import ResponseGenerator
from dstealth.core.services import ChainBalances, CompletionClient, DaimoPayClient, DStealthApi
from dstealth.transports.base import Transport

log = logging.getLogger("dstealth")


def build_transport_factory(settings: Settings):
    if settings.transport == "telegram":
        from dstealth.transports.telegram_bot import TelegramTransport

        def _telegram() -> Transport:
            return TelegramTransport(settings.telegram_token, handles=settings.handles)

        return _telegram

    from dstealth.transports.discord_bot import DiscordTransport

    def _discord() -> Transport:
        return DiscordTransport(settings.discord_token, handles=settings.handles)

    return _discord


async def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s :: %(message)s")

    try:
        settings = Settings.from_env()
        intents = IntentClassifier(override_path=settings.triggers_override)
    except ConfigError as exc:
        raise SystemExit(str(exc))
    logging.getLogger().setLevel(settings.log_level)

    payments = DaimoPayClient(settings.daimo_api_key, api_url=settings.daimo_api_url)
    balances = ChainBalances(settings.base_rpc_url)
    completion = CompletionClient(settings.openai_api_key, model=settings.model)
    if not completion.available:
        log.warning("OPENAI_API_KEY not set; free-form questions get structured replies only")
    if not payments.available:
        log.warning("DAIMO_API_KEY not set; payment links are unavailable")
    if not balances.available:
        log.warning("BASE_RPC_URL not set or unusable; /balance is unavailable")

    profiles = ProfileStore(settings.memory_db)
    responder = ResponseGenerator(
        api=DStealthApi(settings.api_url, token=settings.api_token),
        payments=payments,
        balances=balances,
        completion=completion,
        identities=profiles,
        miniapp_url=settings.miniapp_url,
        invite_url=settings.fluidkey_invite_url,
    )
    agent = StealthAgent(
        transport_factory=build_transport_factory(settings),
        profiles=profiles,
        responder=responder,
        intents=intents,
        handles=settings.handles,
        dedup_capacity=settings.dedup_capacity,
        resync_interval=settings.resync_seconds,
    )

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    log.info("Starting dStealth agent on %s", settings.transport)
    agent_task = asyncio.create_task(agent.run())
    stop_task = asyncio.create_task(stop_event.wait())
    done, _ = await asyncio.wait({agent_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    failure = None
    if agent_task in done:
        failure = agent_task.exception()
    else:
        agent.stop()
        try:
            await asyncio.wait_for(agent_task, timeout=30)
        except asyncio.TimeoutError:
            log.warning("Agent did not stop in time; cancelling")
            agent_task.cancel()
            try:
                await agent_task
            except asyncio.CancelledError:
                pass
        except TransportError as exc:
            failure = exc
    stop_task.cancel()
    profiles.close()

    if isinstance(failure, TransportError):
        raise SystemExit(f"transport failed: {failure}")
    if failure is not None:
        raise failure


if __name__ == "__main__":
    asyncio.run(main())
