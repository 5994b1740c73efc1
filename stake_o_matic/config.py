"""Run configuration: command line, settings file, whitelist and keypairs."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from stake_o_matic.classifier import DEFAULT_QUALITY_BLOCK_PRODUCER_PERCENTAGE
from stake_o_matic.errors import ConfigurationError


LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_JSON_RPC_URL = "http://127.0.0.1:8899"
SOLANA_CLI_CONFIG_PATH = Path.home() / ".config" / "solana" / "cli" / "config.yml"
DEFAULT_BASELINE_STAKE_SOL = 5_000.0
DEFAULT_BONUS_STAKE_SOL = 50_000.0
# ~24 hours worth of slots at 2.5 slots per second
DEFAULT_DELINQUENT_GRACE_SLOT_DISTANCE = 21_600
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
CLUSTER_NAMES = (
    ("mainnet-beta.solana.com", "mainnet-beta"),
    ("testnet.solana.com", "testnet"),
    ("devnet.solana.com", "devnet"),
)

logger = logging.getLogger(__name__)


def lamports_to_sol(value: Optional[int]) -> float:
    return 0.0 if value in (None, 0) else value / LAMPORTS_PER_SOL


def sol_to_lamports(value: float) -> int:
    return int(round(value * LAMPORTS_PER_SOL))


@dataclass(frozen=True)
class Config:
    json_rpc_url: str
    source_stake_address: Pubkey
    authorized_staker: Keypair
    whitelist: Tuple[Pubkey, ...]
    dry_run: bool = True
    cluster_name: str = "unknown"
    # Amount of lamports to stake any validator in the whitelist that is not delinquent
    baseline_stake_amount: int = sol_to_lamports(DEFAULT_BASELINE_STAKE_SOL)
    # Amount of additional lamports to stake quality block producers in the whitelist
    bonus_stake_amount: int = sol_to_lamports(DEFAULT_BONUS_STAKE_SOL)
    quality_block_producer_percentage: int = DEFAULT_QUALITY_BLOCK_PRODUCER_PERCENTAGE
    delinquent_grace_slot_distance: int = DEFAULT_DELINQUENT_GRACE_SLOT_DISTANCE
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    rpc_timeout_seconds: float = 30.0
    rpc_max_attempts: int = 1
    concurrency_limit: int = 4
    metrics_pushgateway: Optional[str] = None
    log_level: str = "INFO"
    report_json: Optional[Path] = None

    @property
    def authority(self) -> Pubkey:
        return self.authorized_staker.pubkey()


def cluster_name_for_url(json_rpc_url: str) -> str:
    for fragment, name in CLUSTER_NAMES:
        if fragment in json_rpc_url:
            return name
    return "unknown"


def load_settings(settings_path: Optional[Path]) -> Dict[str, Any]:
    if settings_path is None:
        return {}
    if not settings_path.exists():
        raise ConfigurationError(f"Configuration file not found at {settings_path}")
    with settings_path.open("r", encoding="utf-8") as handle:
        try:
            settings = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in configuration file: {exc}") from exc
    if not isinstance(settings, dict):
        raise ConfigurationError("Configuration file must contain a JSON object")
    return settings


def load_solana_cli_url(cli_config_path: Path = SOLANA_CLI_CONFIG_PATH) -> Optional[str]:
    if not cli_config_path.exists():
        return None
    try:
        with cli_config_path.open("r", encoding="utf-8") as handle:
            cli_config = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        logger.warning("Ignoring unreadable Solana CLI config %s: %s", cli_config_path, exc)
        return None
    url = cli_config.get("json_rpc_url") if isinstance(cli_config, dict) else None
    if not url:
        return None
    return str(url).strip() or None


def parse_pubkey(value: str, what: str) -> Pubkey:
    try:
        return Pubkey.from_string(value.strip())
    except Exception as exc:  # pylint: disable=broad-except
        raise ConfigurationError(f"Invalid {what} pubkey '{value}': {exc}") from exc


def load_keypair(path: Path) -> Keypair:
    if not path.exists():
        raise ConfigurationError(f"Keypair file not found at {path}")
    try:
        secret = json.loads(path.read_text(encoding="utf-8"))
        return Keypair.from_bytes(bytes(secret))
    except Exception as exc:  # pylint: disable=broad-except
        raise ConfigurationError(f"Invalid keypair file {path}: {exc}") from exc


def resolve_pubkey_or_keypair(value: str, what: str) -> Pubkey:
    candidate = Path(value).expanduser()
    if candidate.exists():
        return load_keypair(candidate).pubkey()
    return parse_pubkey(value, what)


def load_whitelist(whitelist_path: Path) -> Tuple[Pubkey, ...]:
    """Read a YAML array of validator identities, keeping first occurrences in file order."""
    try:
        with whitelist_path.open("r", encoding="utf-8") as handle:
            entries = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"Unable to open whitelist: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Unable to read whitelist: {exc}") from exc

    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise ConfigurationError("Unable to read whitelist: expected a YAML array of validator pubkeys")

    whitelist: List[Pubkey] = []
    for entry in entries:
        pubkey = parse_pubkey(str(entry), "whitelist")
        if pubkey not in whitelist:
            whitelist.append(pubkey)
    return tuple(whitelist)


def _positive_int(settings: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = settings.get(key, default)
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{key}' must be an integer, got {value!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"'{key}' must be at least {minimum}, got {parsed}")
    return parsed


def _positive_float(settings: Dict[str, Any], key: str, default: float) -> float:
    value = settings.get(key, default)
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{key}' must be a number, got {value!r}") from exc
    if parsed < 0:
        raise ConfigurationError(f"'{key}' must not be negative, got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stake-o-matic",
        description="Stake whitelisted validators that are current and produce blocks reliably.",
    )
    parser.add_argument("-C", "--config", type=Path, help="JSON settings file to use")
    parser.add_argument("--url", dest="json_rpc_url", help="JSON RPC URL for the cluster")
    parser.add_argument("--authorized-staker", required=True, type=Path, metavar="KEYPAIR", help="Authorized staker keypair file")
    parser.add_argument(
        "--source-stake-address",
        required=True,
        metavar="ADDRESS",
        help="The source stake account for splitting individual validator stake accounts from",
    )
    parser.add_argument(
        "--whitelist",
        required=True,
        type=Path,
        metavar="FILE",
        help="File containing an YAML array of validator pubkeys eligible for staking",
    )
    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Confirm that the stake adjustments should actually be made",
    )
    parser.add_argument("--report-json", type=Path, metavar="FILE", help="Write a JSON report of the run")
    return parser


def load_config(argv: Optional[Sequence[str]] = None, cli_config_path: Path = SOLANA_CLI_CONFIG_PATH) -> Config:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)

    json_rpc_url = (
        args.json_rpc_url
        or str(settings.get("json_rpc_url") or "").strip()
        or load_solana_cli_url(cli_config_path)
        or DEFAULT_JSON_RPC_URL
    )

    baseline_stake_sol = _positive_float(settings, "baseline_stake_sol", DEFAULT_BASELINE_STAKE_SOL)
    bonus_stake_sol = _positive_float(settings, "bonus_stake_sol", DEFAULT_BONUS_STAKE_SOL)
    quality_percentage = _positive_int(
        settings, "quality_block_producer_percentage", DEFAULT_QUALITY_BLOCK_PRODUCER_PERCENTAGE
    )
    if quality_percentage > 100:
        raise ConfigurationError(f"'quality_block_producer_percentage' must be at most 100, got {quality_percentage}")

    metrics_pushgateway = str(settings.get("metrics_pushgateway") or "").strip() or None

    config = Config(
        json_rpc_url=json_rpc_url,
        cluster_name=cluster_name_for_url(json_rpc_url),
        source_stake_address=resolve_pubkey_or_keypair(args.source_stake_address, "source stake"),
        authorized_staker=load_keypair(args.authorized_staker.expanduser()),
        whitelist=load_whitelist(args.whitelist),
        dry_run=not args.confirm,
        baseline_stake_amount=sol_to_lamports(baseline_stake_sol),
        bonus_stake_amount=sol_to_lamports(bonus_stake_sol),
        quality_block_producer_percentage=quality_percentage,
        delinquent_grace_slot_distance=_positive_int(
            settings, "delinquent_grace_slot_distance", DEFAULT_DELINQUENT_GRACE_SLOT_DISTANCE
        ),
        poll_interval_seconds=_positive_float(settings, "poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
        rpc_timeout_seconds=_positive_float(settings, "rpc_timeout_seconds", 30.0),
        rpc_max_attempts=_positive_int(settings, "rpc_max_attempts", 1, minimum=1),
        concurrency_limit=_positive_int(settings, "concurrency_limit", 4, minimum=1),
        metrics_pushgateway=metrics_pushgateway,
        log_level=str(settings.get("log_level", "INFO")),
        report_json=args.report_json,
    )
    return config
