"""Hot wallet provisioning for withdrawal-enabled networks."""

import logging
from collections import defaultdict

from walletadapter.clients.crypto_adapter import CryptoAdapterClient
from walletadapter.clients.key_management import KeyManagementClient
from walletadapter.errors import ErrorCode, ServicesRequestError
from walletadapter.ledger.models import Activity, HotWalletAsset, Network
from walletadapter.ledger.repository import LedgerRepository

logger = logging.getLogger(__name__)


class HotWalletBootstrap:
    """Creates a hot wallet for every active network that lacks one.

    Assets sharing a coin type (an ERC-20 token and ETH, for example) share
    one address.
    """

    def __init__(
        self,
        repo: LedgerRepository,
        key_management: KeyManagementClient,
        crypto_adapter: CryptoAdapterClient,
        service_id: str,
    ):
        self.repo = repo
        self.key_management = key_management
        self.crypto_adapter = crypto_adapter
        self.service_id = service_id

    async def run(self) -> list[HotWalletAsset]:
        networks = await self.repo.fetch(Network, withdraw_activity=Activity.ACTIVE.value)
        existing = await self.repo.fetch(HotWalletAsset)
        provisioned = {(w.asset_symbol, w.network) for w in existing}

        coin_types = {(n.asset_symbol, n.network): n.coin_type for n in networks}
        addresses_by_coin: dict[int, str] = {}
        for wallet in existing:
            coin_type = coin_types.get((wallet.asset_symbol, wallet.network))
            if coin_type is not None:
                addresses_by_coin.setdefault(coin_type, wallet.address)

        created: list[HotWalletAsset] = []
        new_subscriptions: dict[int, list[str]] = defaultdict(list)

        for network in networks:
            if (network.asset_symbol, network.network) in provisioned:
                continue

            address = addresses_by_coin.get(network.coin_type)
            if address is None:
                generated = await self.key_management.generate_address(
                    self.service_id, network.asset_symbol, network=network.network
                )
                address = generated.address
                addresses_by_coin[network.coin_type] = address
                new_subscriptions[network.coin_type].append(address)

            async with self.repo.transaction():
                wallet = await self.repo.create(
                    HotWalletAsset(
                        address=address,
                        asset_symbol=network.asset_symbol,
                        network=network.network,
                    )
                )
            provisioned.add((network.asset_symbol, network.network))
            created.append(wallet)
            logger.info(f"Created {network.asset_symbol} hot wallet {address} on {network.network}")

        if new_subscriptions:
            await self.subscribe(dict(new_subscriptions))

        return created

    async def subscribe(self, subscriptions: dict[int, list[str]]) -> bool:
        try:
            await self.crypto_adapter.subscribe_addresses(subscriptions)
        except ServicesRequestError as e:
            logger.error(f"{ErrorCode.COULD_NOT_SUBSCRIBE_ADDRESS.value}: {e.message}")
            return False
        return True
