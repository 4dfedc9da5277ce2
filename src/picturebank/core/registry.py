"""Registry of known picture banks and of the subset currently open."""

import logging
import threading
from typing import Callable, Optional

from ..events import BankListChangedEvent, EventBus
from ..exceptions import NoOpenPictureBankError
from ..utils.config import PictureBankConfig, load_bank_configs
from .bank import PictureBank

module_logger = logging.getLogger(__name__)


class BankRegistry:
    """Known bank configurations and the banks currently selected.

    Selecting is symmetric: banks named in ``select`` are opened if they
    aren't yet, open banks not named are closed. A bank that fails to
    open is logged and left out.

    Example:
        >>> registry = BankRegistry.from_config(load_config())
        >>> registry.select(1, 2)
        >>> [bank.name for bank in registry.selected()]
        ['family', 'travel']
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        opener: Callable[..., PictureBank] = PictureBank,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the registry.

        Args:
            bus: Event bus shared with the banks it opens
            opener: Builds a bank from (config, bus=..., logger=...)
            logger: Logger for the registry and its banks
        """
        self.bus = bus or EventBus()
        self._opener = opener
        self.logger = logger or module_logger
        self._configs: dict[int, PictureBankConfig] = {}
        self._open: dict[int, PictureBank] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "BankRegistry":
        """Registry holding every ``[[banks]]`` entry of a loaded config.

        Raises:
            ConfigError: If a bank entry is invalid
        """
        registry = cls(**kwargs)
        for bank_config in load_bank_configs(config):
            registry.register(bank_config)
        return registry

    def register(self, config: PictureBankConfig) -> None:
        """Add or replace a bank configuration.

        Replacing the configuration of an open bank doesn't reopen it.
        """
        with self._lock:
            self._configs[config.picture_bank_id] = config
        self.bus.publish(BankListChangedEvent())

    def unregister(self, config: "PictureBankConfig | int") -> bool:
        """Forget a bank, closing it if open. Returns False if it was unknown."""
        bank_id = config.picture_bank_id if isinstance(config, PictureBankConfig) else config
        with self._lock:
            if bank_id not in self._configs:
                return False
            del self._configs[bank_id]
            bank = self._open.pop(bank_id, None)
        if bank is not None:
            bank.close()
        self.bus.publish(BankListChangedEvent())
        return True

    def select(self, *bank_ids: int) -> list[PictureBank]:
        """Make the open banks exactly those named (when they can be opened).

        Returns:
            The selected banks, ordered by id
        """
        with self._lock:
            wanted = set()
            for bank_id in bank_ids:
                if bank_id in self._configs:
                    wanted.add(bank_id)
                else:
                    self.logger.warning(f"Unknown picture bank {bank_id}")
            to_close = [self._open.pop(i) for i in sorted(set(self._open) - wanted)]
            to_open = [self._configs[i] for i in sorted(wanted - set(self._open))]

            for bank in to_close:
                bank.close()
            for config in to_open:
                try:
                    bank = self._opener(config, bus=self.bus, logger=self.logger)
                except Exception as e:
                    self.logger.error(f"Could not open picture bank {config.picture_bank_id}: {e}")
                    continue
                self._open[config.picture_bank_id] = bank
            selected = self.selected()
        if to_close or to_open:
            self.bus.publish(BankListChangedEvent())
        return selected

    def selected(self) -> list[PictureBank]:
        with self._lock:
            return [self._open[i] for i in sorted(self._open)]

    def require_selected(self) -> list[PictureBank]:
        """Selected banks, failing when none is open.

        Raises:
            NoOpenPictureBankError: If no bank is selected
        """
        banks = self.selected()
        if not banks:
            raise NoOpenPictureBankError("No picture bank is open")
        return banks

    def get(self, bank_id: int) -> Optional[PictureBank]:
        """Open bank with this id, or None."""
        with self._lock:
            return self._open.get(bank_id)

    def all_configs(self) -> list[PictureBankConfig]:
        """Every known configuration, ordered by bank id."""
        with self._lock:
            return sorted(self._configs.values())

    def close(self) -> None:
        """Close every open bank."""
        self.select()

    def __enter__(self) -> "BankRegistry":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
