# Relay protocol constants (wire keys, message types and framing)

# Envelope keys
K_TYPE = "msg_type"
K_USERNAME = "username"
K_ROOM = "room"
K_TEXT = "text"
K_TS = "timestamp"
K_ID = "id"
K_TARGET = "target"

# Message types
T_CHAT = "chat"
T_SYSTEM = "system"
T_COMMAND = "command"
T_PING = "ping"
T_PONG = "pong"
T_JOIN = "join"
T_USERLIST = "userlist"
T_PRIVATE = "private"

# WebSocket subprotocols. A client that negotiates the CBOR subprotocol gets
# binary frames; everything else is JSON text.
SUBPROTOCOL_JSON = "chatrelay.json"
SUBPROTOCOL_CBOR = "chatrelay.cbor"

# Presence snapshot member separator.
USERLIST_SEP = ","
