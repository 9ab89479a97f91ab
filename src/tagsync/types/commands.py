"""Command strings and state names used on the wire."""

import types

CONSTS = types.SimpleNamespace()

# master -> slave commands (command channel)
CONSTS.COMMS = types.SimpleNamespace()
CONSTS.COMMS.PING = "ping"
CONSTS.COMMS.PONG = "pong"
CONSTS.COMMS.STATUS = "status"
CONSTS.COMMS.PREPARE = "prepare"
CONSTS.COMMS.TRIGGER_STATUS = "trigger_status"
CONSTS.COMMS.FILE_ACK = "file_ack"
CONSTS.COMMS.STOP = "stop"
CONSTS.COMMS.RESET = "reset"
CONSTS.COMMS.ACK_ERROR = "ack_error"

# outcome of a trigger, as reported through trigger_status
CONSTS.TRIGGER = types.SimpleNamespace()
CONSTS.TRIGGER.PENDING = "pending"
CONSTS.TRIGGER.ACCEPTED = "accepted"
CONSTS.TRIGGER.REJECTED = "rejected"

# node roles
CONSTS.ROLE = types.SimpleNamespace()
CONSTS.ROLE.MASTER = "master"
CONSTS.ROLE.SLAVE = "slave"

# device text interface
CONSTS.DEVICE = types.SimpleNamespace()
CONSTS.DEVICE.IDN = "*IDN?"
CONSTS.DEVICE.REC_PREFIX = "REC:"
CONSTS.DEVICE.RAW_PREFIX = "RAW"
CONSTS.DEVICE.OK = "OK"
