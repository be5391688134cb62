"""CLI entrypoint for the AgentBox backend."""
from __future__ import annotations

import logging
import sys
import threading
from typing import Optional

from .api import Services, create_app, run_api
from .chain import ChainClient
from .cloudflare import CloudflareClient
from .config import AgentboxSettings
from .crypto import CredentialCrypto
from .db import build_engine, build_session_factory, init_db
from .hetzner import HetznerClient
from .identity import IdentityRegistry
from .session_bridge import SessionBridge
from .signer import LocalSigner, load_signer
from .telegram import TelegramClient


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_services(settings: AgentboxSettings) -> Services:
    logger = logging.getLogger(__name__)

    engine = build_engine(settings.database_url)
    init_db(engine)
    session_factory = build_session_factory(engine)

    crypto = CredentialCrypto(settings.encryption_key) if settings.encryption_key else None
    if crypto is None:
        logger.warning("ENCRYPTION_KEY not set; bot tokens and root passwords cannot be stored")

    vm: Optional[HetznerClient] = None
    if settings.hetzner_api_token and settings.hetzner_snapshot_id:
        vm = HetznerClient(
            settings.hetzner_api_token,
            snapshot_id=settings.hetzner_snapshot_id,
            server_type=settings.hetzner_server_type,
            locations=settings.hetzner_locations,
            ssh_key_ids=settings.hetzner_ssh_key_ids,
        )
    else:
        logger.warning("Hetzner not configured; instance creation will return 503")

    dns: Optional[CloudflareClient] = None
    if settings.cf_api_token and settings.cf_zone_id:
        dns = CloudflareClient(settings.cf_api_token, settings.cf_zone_id)
    else:
        logger.info("Cloudflare not configured; instances will not get DNS records")

    signer: Optional[LocalSigner] = None
    if settings.custodial_private_key:
        signer = load_signer(settings.custodial_private_key)
        logger.info("Custodial wallet %s", signer.address)
    chain = ChainClient(
        rpc_url=settings.eth_rpc_url,
        chain_id=settings.chain_id,
        signer=signer,
        dry_run=settings.chain_dry_run,
    )

    identity: Optional[IdentityRegistry] = None
    if settings.identity_contract_address:
        identity = IdentityRegistry(
            chain,
            settings.identity_contract_address,
            upload_url=settings.identity_metadata_upload_url,
        )
    else:
        logger.warning("IDENTITY_CONTRACT_ADDRESS not set; instances will not be minted")

    session_bridge = SessionBridge(settings, crypto=crypto)

    return Services.build(
        settings,
        session_factory,
        crypto=crypto,
        vm=vm,
        dns=dns,
        chain=chain,
        identity=identity,
        telegram=TelegramClient(settings.telegram_api_base),
        session_bridge=session_bridge,
    )


def main() -> None:
    settings = AgentboxSettings()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    logger.info("Starting AgentBox backend")
    services = build_services(settings)

    app = create_app(services)
    api_thread = threading.Thread(
        target=run_api,
        name="agentbox-api",
        args=(app, settings),
        daemon=True,
    )
    api_thread.start()
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)

    mint_thread = threading.Thread(
        target=services.mint_worker.run_forever,
        name="agentbox-mint-worker",
        daemon=True,
    )
    mint_thread.start()

    try:
        services.reaper.run_forever()
    except KeyboardInterrupt:
        logger.info("AgentBox backend stopped via keyboard interrupt")
        services.mint_worker.stop()


if __name__ == "__main__":
    main()
