import re
from typing import Any

import click


def _strip_brackets(text: str) -> str:
    # "{200,200}" や "[200, 200]" も受け付ける
    return text.strip().strip("{}[]()").strip()


class IntListParamType(click.ParamType):
    """Comma separated integers, e.g. ``200,200``."""

    name = "int_list"

    def convert(self, value: Any, param, ctx) -> tuple[int, ...]:
        if isinstance(value, tuple):
            return value

        items = [v.strip() for v in _strip_brackets(str(value)).split(",")]
        try:
            result = tuple(int(v) for v in items if v)
        except ValueError:
            self.fail(f"{value!r} is not a comma separated list of integers", param, ctx)

        if not result:
            self.fail(f"{value!r} is empty", param, ctx)
        return result


class FloatPairParamType(click.ParamType):
    """Two comma separated floats, e.g. ``0.9,0.999``."""

    name = "float_pair"

    def convert(self, value: Any, param, ctx) -> tuple[float, float]:
        if isinstance(value, tuple):
            return value

        items = [v.strip() for v in _strip_brackets(str(value)).split(",")]
        try:
            result = tuple(float(v) for v in items if v)
        except ValueError:
            self.fail(f"{value!r} is not a pair of numbers", param, ctx)

        if len(result) != 2:
            self.fail(f"{value!r} must contain exactly two numbers", param, ctx)
        return result  # type: ignore[return-value]


# "5=0.5", "5:0.5", "[5]=0.5"
_SCHEDULE_ENTRY = re.compile(r"^\[?\s*(\d+)\s*\]?\s*[=:]\s*(\S+)$")


class ScheduleParamType(click.ParamType):
    """Epoch to learning rate mapping, e.g. ``5=0.5,6=0.25``."""

    name = "schedule"

    def convert(self, value: Any, param, ctx) -> dict[int, float]:
        if isinstance(value, dict):
            return value

        schedule: dict[int, float] = {}
        for entry in _strip_brackets(str(value)).split(","):
            entry = entry.strip()
            if not entry:
                continue

            m = _SCHEDULE_ENTRY.match(entry)
            if m is None:
                self.fail(f"{entry!r} is not an EPOCH=RATE pair", param, ctx)

            try:
                rate = float(m.group(2))
            except ValueError:
                self.fail(f"{m.group(2)!r} is not a learning rate", param, ctx)

            schedule[int(m.group(1))] = rate

        if not schedule:
            self.fail(f"{value!r} is empty", param, ctx)
        return schedule


INT_LIST = IntListParamType()
FLOAT_PAIR = FloatPairParamType()
SCHEDULE = ScheduleParamType()
