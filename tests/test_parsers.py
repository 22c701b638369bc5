from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from agenda_bot.services.parsers import (
    group_times,
    is_affirmative,
    is_booking_trigger,
    is_negative,
    is_price_request,
    is_times_request,
    normalize_for_matching,
    normalize_time,
    parse_date,
    parse_quantity,
    parse_time,
    resolve_timezone,
    today_in_timezone,
)

# Tuesday
TODAY = date(2026, 3, 10)


class TestNormalizeForMatching:
    def test_strips_accents_case_and_edge_punctuation(self):
        assert normalize_for_matching("  Não!  ") == "nao"

    def test_collapses_whitespace(self):
        assert normalize_for_matching("Quero   AGENDAR\n um corte") == "quero agendar um corte"

    def test_empty(self):
        assert normalize_for_matching("") == ""


class TestYesNo:
    @pytest.mark.parametrize("text", ["Sim", "sim, pode confirmar", "Confirmar", "OK!", "pode ser"])
    def test_affirmative(self, text):
        assert is_affirmative(text) is True

    @pytest.mark.parametrize("text", ["simone", "sexta", "talvez", ""])
    def test_not_affirmative(self, text):
        assert is_affirmative(text) is False

    @pytest.mark.parametrize("text", ["Não", "nao quero", "Cancelar", "desisto"])
    def test_negative(self, text):
        assert is_negative(text) is True

    def test_negative_does_not_match_inside_words(self):
        assert is_negative("nada disso") is False

    def test_bare_no_is_negative(self):
        assert is_negative("No!") is True

    @pytest.mark.parametrize("text", ["no sábado", "no dia 25", "no horário das 9"])
    def test_no_as_contraction_is_not_negative(self, text):
        assert is_negative(text) is False


class TestIntents:
    @pytest.mark.parametrize(
        "text",
        ["Agendar", "Oi, quero agendar um corte", "Bom dia! Gostaria de marcar", "quero reservar"],
    )
    def test_booking_trigger(self, text):
        assert is_booking_trigger(text) is True

    @pytest.mark.parametrize("text", ["não quero agendar", "qual o endereço?", "25/12"])
    def test_not_booking_trigger(self, text):
        assert is_booking_trigger(text) is False

    def test_price_request(self):
        assert is_price_request("Quanto custa?") is True
        assert is_price_request("Quais os preços") is True
        assert is_price_request("amanhã") is False

    def test_times_request(self):
        assert is_times_request("Quais horários tem?") is True
        assert is_times_request("tem vaga?") is False
        assert is_times_request("tem vagas?") is True


class TestParseDateNumeric:
    def test_day_month_this_year(self):
        assert parse_date("25/12", TODAY) == date(2026, 12, 25)

    def test_today_is_accepted(self):
        assert parse_date("10/03", TODAY) == TODAY

    def test_past_date_rejected(self):
        assert parse_date("09/03", TODAY) is None

    @pytest.mark.parametrize("text", ["31/02", "12/13", "32/01", "00/05"])
    def test_invalid_calendar_dates(self, text):
        assert parse_date(text, TODAY) is None

    def test_explicit_year(self):
        assert parse_date("25/12/2027", TODAY) == date(2027, 12, 25)

    def test_two_digit_year_and_dashes(self):
        assert parse_date("1-4-27", TODAY) == date(2027, 4, 1)

    def test_embedded_in_sentence(self):
        assert parse_date("pode ser dia 25/12?", TODAY) == date(2026, 12, 25)

    def test_every_upcoming_day_round_trips(self):
        for offset in range(0, 60):
            expected = TODAY + timedelta(days=offset)
            assert parse_date(f"{expected.day:02d}/{expected.month:02d}", TODAY) == expected

    def test_every_past_day_is_rejected(self):
        for offset in range(1, 60):
            past = TODAY - timedelta(days=offset)
            assert parse_date(f"{past.day}/{past.month}", TODAY) is None


class TestParseDateWords:
    def test_day_de_month(self):
        assert parse_date("15 de abril", TODAY) == date(2026, 4, 15)

    def test_dia_prefix(self):
        assert parse_date("dia 20 de março", TODAY) == date(2026, 3, 20)

    def test_abbreviated_month_first(self):
        assert parse_date("abr 15", TODAY) == date(2026, 4, 15)

    def test_month_name_past(self):
        assert parse_date("5 de fevereiro", TODAY) is None

    def test_relative_days(self):
        assert parse_date("hoje", TODAY) == TODAY
        assert parse_date("Amanhã", TODAY) == date(2026, 3, 11)
        assert parse_date("depois de amanhã", TODAY) == date(2026, 3, 12)

    def test_weekday_this_week(self):
        assert parse_date("sexta", TODAY) == date(2026, 3, 13)

    def test_weekday_same_as_today(self):
        assert parse_date("terça-feira", TODAY) == TODAY

    def test_weekday_outside_current_month(self):
        # Monday
        end_of_month = date(2026, 3, 30)
        assert parse_date("sexta", end_of_month) is None
        assert parse_date("segunda", end_of_month) == end_of_month
        assert parse_date("terca", end_of_month) == date(2026, 3, 31)

    def test_weekday_results_stay_within_month(self):
        names = ["segunda", "terca", "quarta", "quinta", "sexta", "sabado", "domingo"]
        for day in range(1, 32):
            today = date(2026, 3, day)
            for index, name in enumerate(names):
                result = parse_date(name, today)
                if result is None:
                    continue
                assert result.weekday() == index
                assert result.month == today.month
                assert 0 <= (result - today).days < 7

    def test_bare_day(self):
        assert parse_date("25", TODAY) == date(2026, 3, 25)
        assert parse_date("dia 5", TODAY) is None

    def test_bare_day_not_in_month(self):
        assert parse_date("dia 31", date(2026, 4, 10)) is None

    def test_unrecognized(self):
        assert parse_date("qualquer coisa", TODAY) is None
        assert parse_date("", TODAY) is None


class TestParseTime:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("9", "09:00"),
            ("14:30", "14:30"),
            ("9h30", "09:30"),
            ("14h", "14:00"),
            ("às 9:05", "09:05"),
            ("às 14 horas", "14:00"),
        ],
    )
    def test_accepted_forms(self, text, expected):
        assert parse_time(text) == expected

    @pytest.mark.parametrize("text", ["24:00", "10:60", "25/12", "abc", ""])
    def test_rejected(self, text):
        assert parse_time(text) is None


class TestParseQuantity:
    def test_digits(self):
        assert parse_quantity("somos 3") == 3

    def test_words(self):
        assert parse_quantity("duas pessoas") == 2

    def test_missing(self):
        assert parse_quantity("algumas") is None


class TestTimeHelpers:
    def test_normalize_time(self):
        assert normalize_time("9:5") == "09:05"
        assert normalize_time("09:00:00") == "09:00"
        assert normalize_time("bad") == "bad"

    def test_group_times(self):
        assert group_times(["14:00", "09:00", "19:30", "09:00"]) == [
            ("Manhã", ["09:00"]),
            ("Tarde", ["14:00"]),
            ("Noite", ["19:30"]),
        ]

    def test_group_times_skips_empty_buckets(self):
        assert group_times(["08:00", "10:30"]) == [("Manhã", ["08:00", "10:30"])]


class TestTimezones:
    def test_today_in_tenant_timezone(self):
        now = datetime(2026, 3, 11, 2, 0, tzinfo=timezone.utc)
        assert today_in_timezone(ZoneInfo("America/Sao_Paulo"), now) == date(2026, 3, 10)

    def test_naive_now_is_utc(self):
        assert today_in_timezone(ZoneInfo("UTC"), datetime(2026, 3, 11, 2, 0)) == date(2026, 3, 11)

    def test_unknown_zone_falls_back(self):
        assert resolve_timezone("Mars/Base", "America/Sao_Paulo").key == "America/Sao_Paulo"

    def test_missing_zone_uses_default(self):
        assert resolve_timezone(None, "America/Sao_Paulo").key == "America/Sao_Paulo"
