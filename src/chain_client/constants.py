"""Default service endpoints per network."""

MAINNET_INDEXER_URL = "https://bchblockexplorer.com"
TESTNET_INDEXER_URL = "https://tbch.blockbook.fullstack.cash"
DEFAULT_WALLET_URL = "http://127.0.0.1:5100"
PRICE_URL = "https://api.coinbase.com/v2/prices/BCH-USD/spot"

SATOSHIS_PER_BCH = 10**8


def default_urls(network: str) -> dict[str, str]:
    """Return the default indexer, wallet and price endpoints for a network."""
    indexer = TESTNET_INDEXER_URL if network == "testnet" else MAINNET_INDEXER_URL
    return {"indexer": indexer, "wallet": DEFAULT_WALLET_URL, "price": PRICE_URL}
