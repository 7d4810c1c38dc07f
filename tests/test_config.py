import pytest

from erc20_indexer.config import IndexerConfig, env_overrides, load_config
from erc20_indexer.errors import ConfigError


def test_defaults():
    config = load_config(environ={})

    assert config.rpc_url == "https://eth.llamarpc.com"
    assert config.chain_id == 11155111
    assert config.start_block == 0
    assert config.database_url == "sqlite:///indexer.db"
    assert config.max_batch_span == 100
    assert config.token_address is None


def test_yaml_then_env_then_overrides(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "rpc_url: http://yaml:8545\n"
        "chain_id: 1\n"
        "start_block: 10\n"
        "poll_interval: 2.5\n"
        "fetch_retry:\n"
        "  max_attempts: 7\n"
    )

    config = load_config(
        path,
        overrides={"start_block": 30, "database_url": None},
        environ={"START_BLOCK": "20", "RPC_URL": "http://env:8545"},
    )

    assert config.rpc_url == "http://env:8545"
    assert config.chain_id == 1
    assert config.start_block == 30
    assert config.poll_interval == 2.5
    assert config.fetch_retry.max_attempts == 7
    assert config.database_url == "sqlite:///indexer.db"


def test_db_path_and_database_url():
    assert env_overrides({"DB_PATH": "data/x.db"})["database_url"] == "sqlite:///data/x.db"

    both = env_overrides({"DB_PATH": "x.db", "DATABASE_URL": "postgresql://u@h/db"})
    assert both["database_url"] == "postgresql://u@h/db"


def test_token_address_is_normalised():
    config = IndexerConfig(token_address="0x" + "AB" * 20)
    assert config.token_address == "0x" + "ab" * 20

    assert IndexerConfig(token_address="").token_address is None


@pytest.mark.parametrize(
    "values",
    [
        {"START_BLOCK": "-1"},
        {"MAX_BATCH_SPAN": "0"},
        {"CHAIN_ID": "mainnet"},
        {"TOKEN_ADDRESS": "0x1234"},
    ],
)
def test_invalid_values_raise_config_error(values):
    with pytest.raises(ConfigError):
        load_config(environ=values)


def test_unreadable_file_raises_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml", environ={})


def test_backoff_bounds_are_checked():
    with pytest.raises(ConfigError):
        load_config(overrides={"backoff": {"base_delay": 10, "max_delay": 1}}, environ={})


def test_cli_rejects_invalid_config(monkeypatch):
    from erc20_indexer import cli

    monkeypatch.delenv("START_BLOCK", raising=False)

    assert cli.main(["--log-dir", "", "--start-block", "-5"]) == 2


def test_cli_arguments():
    from erc20_indexer.cli import parse_args

    args = parse_args(["--config", "c.yaml", "--start-block", "7", "--end-block", "9"])

    assert args.config == "c.yaml"
    assert args.start_block == 7
    assert args.end_block == 9
    assert args.log_dir == "logs"
