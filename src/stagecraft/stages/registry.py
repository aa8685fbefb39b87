"""Stage lookup by letter, in deployment order."""

from __future__ import annotations

from stagecraft.core.errors import ConfigurationError
from stagecraft.stages import cloudfront, function, react, react_api, ssl
from stagecraft.stages.base import Stage

STAGES: dict[str, Stage] = {
    stage.letter: stage
    for stage in (cloudfront.STAGE, ssl.STAGE, function.STAGE, react.STAGE, react_api.STAGE)
}


def get_stage(letter: str) -> Stage:
    try:
        return STAGES[letter.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown stage '{letter}'; expected one of {', '.join(STAGES)}"
        ) from None
