"""
Night quiet hours (23:00-07:00 local time) for chats mapped to a timezone.

Window boundaries are resolved through the timezone database, so the
absolute end of a night that crosses a DST switch is still local 07:00.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatwarden.models import QuietHoursWindow

NIGHT_QUIET_START_HOUR = 23
NIGHT_QUIET_END_HOUR = 7

CHAT_TIMEZONES = {
    -69049244448234: "Europe/Moscow",  # Rostov-on-Don
    -69067549505002: "Europe/Moscow",  # Krasnodar
    -71307153924250: "Asia/Irkutsk",  # Angarsk
    -71313986483690: "Europe/Moscow",  # Volgograd
    -71336283338218: "Europe/Moscow",  # Rodionovka
    -71443525791210: "Asia/Yekaterinburg",  # Ufa
    -71456471431277: "Europe/Moscow",  # Kazan
    -71456678709255: "Europe/Moscow",  # Kuban
    -71456680806407: "Asia/Irkutsk",  # Irkutsk
    -71456683034631: "Europe/Moscow",  # Novorossiysk
    -71489685325831: "Europe/Moscow",  # Anapa
    -71489688733703: "Europe/Moscow",  # Stavropol
    -71489692010503: "Asia/Yekaterinburg",  # Yekaterinburg
    -71489737820167: "Europe/Moscow",  # Yeysk
    -71489753942023: "Europe/Moscow",  # Novoshakhtinsk
    -71489818560519: "Asia/Chita",  # Chita
    -71506814142471: "Asia/Vladivostok",  # Khabarovsk
    -71506932434951: "Asia/Krasnoyarsk",  # Krasnoyarsk
    -71520449562631: "Asia/Yekaterinburg",  # Tyumen
    -71525320394759: "Europe/Moscow",  # Volgodonsk
}


def _local_to_utc_ts(day, hour: int, tz: ZoneInfo) -> float:
    # fold=0 picks the earlier instant for ambiguous times; gaps resolve forward via the utc round trip.
    local = datetime.combine(day, time(hour=hour), tzinfo=tz)
    return local.astimezone(timezone.utc).timestamp()


def resolve_quiet_hours_window(
    chat_id: int,
    now: float,
    timezones: Optional[Mapping[int, str]] = None,
) -> Optional[QuietHoursWindow]:
    """Return the current quiet-hours window for the chat, or None outside it or for unmapped chats."""
    tz_name = (CHAT_TIMEZONES if timezones is None else timezones).get(chat_id)
    if not tz_name:
        return None

    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return None

    local_now = datetime.fromtimestamp(now, tz=timezone.utc).astimezone(tz)
    if NIGHT_QUIET_END_HOUR <= local_now.hour < NIGHT_QUIET_START_HOUR:
        return None

    start_day = local_now.date()
    if local_now.hour < NIGHT_QUIET_END_HOUR:
        start_day -= timedelta(days=1)
    end_day = start_day + timedelta(days=1)

    return QuietHoursWindow(
        timezone=tz_name,
        local_hour=local_now.hour,
        window_start_ts=_local_to_utc_ts(start_day, NIGHT_QUIET_START_HOUR, tz),
        window_end_ts=_local_to_utc_ts(end_day, NIGHT_QUIET_END_HOUR, tz),
    )
