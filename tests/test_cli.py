from ledgerwatch.__main__ import build_parser
from ledgerwatch.api.config import Settings


def test_defaults_come_from_settings():
    args = build_parser().parse_args([])
    defaults = Settings()
    assert (args.duration, args.wait, args.accounts) == (
        defaults.DURATION_SECONDS, defaults.WAIT_MS, defaults.ACCOUNTS
    )


def test_short_flags():
    args = build_parser().parse_args(["-d", "600", "-w", "250", "-a", "12"])
    assert (args.duration, args.wait, args.accounts) == (600, 250, 12)


def test_settings_raise_accounts_to_two():
    assert Settings(ACCOUNTS=1).ACCOUNTS == 2
