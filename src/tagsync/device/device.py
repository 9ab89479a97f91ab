"""Device base class.

All hardware devices in tagsync inherit from this class and implement the
methods of `tagsync.types.protocols.TimeTaggerProtocol`. The node validates
protocol compliance when a device is created from configuration.
"""

from __future__ import annotations

from typing import Type

from loguru import logger


class Device:
    """Base class for all hardware devices in tagsync.

    Specific device implementations inherit from this class, declare their
    configuration in `required_config` and implement the device protocol.

    Required Methods
    --------------
    All device implementations must override these methods:

    - open(): Connect to the hardware
    - close(): Disconnect from the hardware
    - is_connected(): Check connection status

    Attributes
    ----------
    required_config : dict[str, Type]
        Required configuration parameters and their types

    Examples
    --------
    ```python
    class MyTagger(Device):
        required_config = {"address": str, "port": int}

        def open(self) -> tuple[bool, str]:
            self._connected = True
            return True, "Connected successfully"
    ```
    """

    required_config: dict[str, Type] = {}  # Required configuration keys

    def __init__(self, **config_kwargs):
        for key, value in config_kwargs.items():
            setattr(self, key, value)
        for key, value in self.required_config.items():
            if not hasattr(self, key):
                logger.error(
                    f"Device {self.__class__.__name__} missing required config key: "
                    + f"{key}"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} missing required config "
                    + f"key: {key}"
                )
            if not isinstance(getattr(self, key), value):
                logger.error(
                    f"Device {self.__class__.__name__} config key {key} "
                    + f"has wrong type: {type(getattr(self, key))} (expected {value})"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} config key {key} has "
                    + f"wrong type: {type(getattr(self, key))} (expected {value})"
                )

    def open(self) -> tuple[bool, str]:
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()

    def is_connected(self) -> bool:
        raise NotImplementedError()

    def get_all_attrs(self):
        """
        Function to return all of the managed attributes of the class
        Managed attributes are the ones that start with a underscore
        """
        attrs = {}
        for key, value in self.__dict__.items():
            # single underscore attr are managed
            if key[0] == "_" and not key.startswith(f"_{self.__class__.__name__}"):
                if isinstance(value, (str, int, float, bool)):
                    attrs[key[1:]] = value
        return attrs
