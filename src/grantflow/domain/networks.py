from __future__ import annotations

from grantflow.domain.models import Network

BLOCK_EXPLORER_URLS = {
    Network.POLKADOT.value: 'https://polkadot.subscan.io',
    Network.KUSAMA.value: 'https://kusama.subscan.io',
    Network.PASEO.value: 'https://paseo.subscan.io',
    Network.PASEO_ASSET_HUB.value: 'https://assethub-paseo.subscan.io',
}

DEFAULT_NETWORK = Network.PASEO.value


def normalize_network(value: str | Network | None, *, default: str = DEFAULT_NETWORK) -> str:
    if isinstance(value, Network):
        return value.value
    text = str(value or '').strip().lower().replace('-', '_')
    if text in BLOCK_EXPLORER_URLS:
        return text
    return default if default in BLOCK_EXPLORER_URLS else DEFAULT_NETWORK


def block_explorer_url(tx_hash: str, *, network: str | Network | None = None) -> str:
    base = BLOCK_EXPLORER_URLS[normalize_network(network)]
    return f'{base}/extrinsic/{str(tx_hash).strip()}'
