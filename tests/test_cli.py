import argparse
import warnings

import pytest

from pricing.cli import main, parse_point


def test_estimate_output(capsys):
    assert main(["estimate", "--category", "engine", "--discount", "10"]) == 0
    out = capsys.readouterr().out
    assert "profile STANDARD" in out
    assert "Discount: -470.00 (10%)" in out
    assert "TOTAL:    4230.00 UAH" in out


def test_estimate_unknown_profile(capsys):
    assert main(["estimate", "--profile", "GOLD"]) == 1
    assert "Unknown profile GOLD" in capsys.readouterr().out


def test_list_categories(capsys):
    assert main(["estimate", "--list-categories"]) == 0
    out = capsys.readouterr().out
    assert "brakes: Brake system maintenance" in out
    assert "ECONOMY, PREMIUM, STANDARD" in out


def test_tow_quote_night(capsys):
    rc = main(["tow-quote", "--from", "50.4501,30.5234", "--to", "50.5110,30.7909", "--at", "2025-03-10T23:00"])
    assert rc == 0
    assert "(night tariff)" in capsys.readouterr().out


def test_tow_quote_same_point(capsys):
    assert main(["tow-quote", "--from", "50.45,30.52", "--to", "50.45,30.52", "--at", "2025-03-10T12:00"]) == 1
    assert "Cannot quote" in capsys.readouterr().out


def test_offers(capsys):
    assert main(["offers", "--category", "glass", "--year", "2000"]) == 0
    out = capsys.readouterr().out
    assert "KASKO_GLASS" in out
    assert "MECH_BREAK" in out


def test_bad_point():
    with pytest.raises(argparse.ArgumentTypeError):
        parse_point("50.45")


def test_tow_quote_defaults_to_current_utc_time(capsys):
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        assert main(["tow-quote", "--from", "50.45,30.52", "--to", "50.40,30.62"]) == 0
    assert "TOW QUOTE @" in capsys.readouterr().out
