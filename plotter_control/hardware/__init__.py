"""
Hardware communication module.

Provides the serial transport, the ack-paced device link with its
recovery data, and the notification events relayed to observers.
"""

from plotter_control.hardware.device_link import (
    AckTimeout,
    DeviceConnection,
    DeviceConnectionError,
    DeviceDisconnected,
    DeviceLink,
    DeviceLinkError,
    DeviceWriteError,
    LinkBusy,
    StreamCancelled,
    StreamControl,
)
from plotter_control.hardware.events import NotificationBus
from plotter_control.hardware.transport import SerialTransport, Transport, TransportError

__all__ = [
    "AckTimeout",
    "DeviceConnection",
    "DeviceConnectionError",
    "DeviceDisconnected",
    "DeviceLink",
    "DeviceLinkError",
    "DeviceWriteError",
    "LinkBusy",
    "NotificationBus",
    "SerialTransport",
    "StreamCancelled",
    "StreamControl",
    "Transport",
    "TransportError",
]
