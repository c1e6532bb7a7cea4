import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"
log_path = Path("logs")


def merge_config(base: dict, override: dict) -> dict:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = merge_config(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | Path | None = None) -> dict:
    """Packaged defaults, then an optional operator file, then the environment."""
    conf = tomllib.loads(config_file.read_text())
    if path is not None:
        conf = merge_config(conf, tomllib.loads(Path(path).read_text()))

    conf["ledger"]["url"] = os.getenv("AIRDROP_RPC_URL", conf["ledger"]["url"])
    seeds = os.getenv("AIRDROP_SENDER_SEED")
    if seeds:
        conf["sender"]["seeds"] = [s.strip() for s in seeds.split(",") if s.strip()]
    return conf


cfg = load_config()
