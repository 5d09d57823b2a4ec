"""Spanish date/time expression parsing."""

from datetime import date, time

import pytest

from voicebot.conversation.dates import fold, parse_relative_date, parse_relative_time

TODAY = date(2026, 10, 19)  # a Monday


def test_fold_strips_accents_and_case():
    assert fold("Miércoles a las SEIS y Mañana") == "miercoles a las seis y manana"
    assert fold(None) == ""


class TestRelativeDate:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("hoy mismo", date(2026, 10, 19)),
            ("mañana a las 10", date(2026, 10, 20)),
            ("pasado mañana", date(2026, 10, 21)),
            ("el jueves", date(2026, 10, 22)),
            ("el Miércoles por la tarde", date(2026, 10, 21)),
            ("el lunes", date(2026, 10, 26)),
            ("el 30 de octubre", date(2026, 10, 30)),
            ("el 15 de marzo", date(2027, 3, 15)),
        ],
    )
    def test_expressions(self, text, expected):
        assert parse_relative_date(text, TODAY) == expected

    def test_morning_is_not_tomorrow(self):
        assert parse_relative_date("en la mañana", TODAY) is None

    def test_invalid_day_of_month(self):
        assert parse_relative_date("el 31 de febrero", TODAY) is None

    def test_nothing_found(self):
        assert parse_relative_date("cuando pueda", TODAY) is None


class TestRelativeTime:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("a las 4", time(16, 0)),
            ("a las 10", time(10, 0)),
            ("a las cuatro y media", time(16, 30)),
            ("a las 9 y cuarto", time(9, 15)),
            ("a las 11:45", time(11, 45)),
            ("a las 10 de la noche", time(22, 0)),
            ("a las 12 am", time(0, 0)),
            ("como a las 6 pm", time(18, 0)),
            ("5 pm", time(17, 0)),
            ("16:30", time(16, 30)),
            ("a las 7 en la mañana", time(7, 0)),
            ("en la tarde", time(15, 0)),
            ("por la noche", time(19, 0)),
            ("temprano", time(10, 0)),
            ("a mediodía", time(12, 0)),
        ],
    )
    def test_expressions(self, text, expected):
        assert parse_relative_time(text) == expected

    def test_out_of_range(self):
        assert parse_relative_time("a las 25") is None

    def test_nothing_found(self):
        assert parse_relative_time("cuando pueda") is None
