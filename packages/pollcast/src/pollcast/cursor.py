"""Subscribe cursor — the (timetoken, region) pair a long-poll resumes from.

Learn: The server stamps every poll response with a timetoken. Sending it
back on the next poll means "give me everything after this point", so the
cursor is the only state needed to resume after a poll or a reconnect.
A timetoken of 0 means "no position yet": the loop first issues a bootstrap
poll that only returns a fresh timetoken.
"""

from dataclasses import dataclass
from typing import Optional, Union

import structlog

logger = structlog.get_logger()


@dataclass
class Cursor:
    timetoken: int = 0
    region: Optional[int] = None

    @property
    def needs_bootstrap(self) -> bool:
        return self.timetoken == 0

    def update(
        self, timetoken: Union[int, str, None], region: Optional[int] = None
    ) -> bool:
        """Advance to a server-issued position.

        Returns False (cursor untouched) when the response carried no
        timetoken or an older one; the timetoken only moves backwards
        through reset() or seek().
        """
        if timetoken is None:
            return False
        value = int(timetoken)
        if value < self.timetoken:
            logger.warning(
                "pollcast.cursor.stale_timetoken",
                current=self.timetoken,
                received=value,
            )
            return False
        self.timetoken = value
        self.region = region
        return True

    def reset(self) -> None:
        """Back to {0, none}; the next Connecting state bootstraps."""
        self.timetoken = 0
        self.region = None

    def seek(self, timetoken: Union[int, str], region: Optional[int] = None) -> None:
        """Explicit reposition, allowed to move backwards."""
        self.timetoken = int(timetoken)
        self.region = region

    def params(self) -> dict[str, str]:
        """Query parameters for the next subscribe request."""
        params = {"tt": str(self.timetoken)}
        if self.region is not None:
            params["tr"] = str(self.region)
        return params

    def copy(self) -> "Cursor":
        return Cursor(self.timetoken, self.region)
