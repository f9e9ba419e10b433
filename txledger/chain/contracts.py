"""
Known chains, protocol contracts and call signatures.
"""

SEPOLIA_CHAIN_ID = 11155111
BSC_TESTNET_CHAIN_ID = 97

# Chain configurations for discovery and pricing
CHAIN_CONFIG = {
    SEPOLIA_CHAIN_ID: {
        "name": "Sepolia Testnet",
        "rpc_setting": "sepolia_rpc_url",
        "poa": False,
        "link_port": "0x110B273c4DB995188602492599a583B9eAfD74d0",
        "pools": [],
        "price_feeds": {
            "ETH/USD": "0x694AA1769357215DE4FAC081bf1f309aDC325306",
            "LINK/USD": "0xc59E3633BAAC79493d908e63626716e204A45EdF",
            "BTC/USD": "0x1b44F3514812d835EB1BDB0acB33d3fA3351Ee43",
        },
        "tokens": {
            "0x779877a7b0d9e8603169ddbd7836e478b4624789": ("LINK", 18),
            "0x0000000000000000000000000000000000000000": ("ETH", 18),
        },
        "native_symbol": "ETH",
    },
    BSC_TESTNET_CHAIN_ID: {
        "name": "BSC Testnet",
        "rpc_setting": "bsc_testnet_rpc_url",
        "poa": True,
        "link_port": "0x24F81DA0aBBD2a88605E4B140880647F26178744",
        "pools": [],
        "price_feeds": {
            "BNB/USD": "0x2514895c72f50D8bd4B4F9b1110F0D6bD2c97526",
            "ETH/USD": "0x143db3CEEfbdfe5631aDD3E50f7614B6ba708BA7",
            "LINK/USD": "0x1B329402Cb1825C4797703f854985F06cD6067BC",
            "BTC/USD": "0x5741306c21795FdCBb9b265Ea0255F499DFe515C",
            "USDT/USD": "0xEca2605f0BCF2BA5966372C99837b1F182d3D620",
        },
        "tokens": {
            "0x337610d27c682e347c9cd60bd4b3b107c9d34ddd": ("USDT", 18),
            "0x0000000000000000000000000000000000000000": ("BNB", 18),
        },
        "native_symbol": "BNB",
    },
}


# 4-byte selectors of the calls the ledger understands
FUNCTION_SELECTORS = {
    "0xa9059cbb": "transfer",
    "0x23b872dd": "transferFrom",
    "0x095ea7b3": "approve",
    "0xb6b55f25": "deposit",
    "0x2e1a7d4d": "withdraw",
    "0xd0e30db0": "depositNative",
    "0xc9567bf9": "borrow",
    "0x371fd8e6": "repay",
    "0x01681a62": "bridge",
    "0xa694fc3a": "stake",
    "0x2e17de78": "unstake",
}

# keccak256("Transfer(address,address,uint256)")
TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

# Chainlink aggregator, only the reads we need
CHAINLINK_AGGREGATOR_ABI = [
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"internalType": "uint80", "name": "roundId", "type": "uint80"},
            {"internalType": "int256", "name": "answer", "type": "int256"},
            {"internalType": "uint256", "name": "startedAt", "type": "uint256"},
            {"internalType": "uint256", "name": "updatedAt", "type": "uint256"},
            {"internalType": "uint80", "name": "answeredInRound", "type": "uint80"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function"
    }
]


def get_chain_name(chain_id: int) -> str:
    """Display name for a chain id."""
    config = CHAIN_CONFIG.get(chain_id)
    return config["name"] if config else "Unknown"


def get_known_contracts(chain_id: int) -> list[str]:
    """LinkPort plus known liquidity pools for a chain."""
    config = CHAIN_CONFIG.get(chain_id)
    if not config:
        return []
    contracts = []
    if config.get("link_port"):
        contracts.append(config["link_port"])
    contracts.extend(config.get("pools", []))
    return contracts


def lookup_token(chain_id: int, token_address: str) -> tuple[str, int]:
    """Resolve a token address to (symbol, decimals). Unknown tokens map to UNKNOWN/18."""
    config = CHAIN_CONFIG.get(chain_id, {})
    return config.get("tokens", {}).get(token_address.lower(), ("UNKNOWN", 18))
