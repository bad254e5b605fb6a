"""
Event kind constants.

Kinds are the event names clients subscribe to; they are delivered verbatim
as the "type" field of every realtime frame.
"""

# Presence
RECEIVE_ONLINE = "receiveOnline"
RECEIVE_FRIEND_ONLINE = "receiveFriendOnline"
RECEIVE_FRIEND_OFFLINE = "receiveFriendOffline"

# Channels
RECEIVE_CHANNEL_CREATE = "receiveChannelCreate"
RECEIVE_CHANNEL_UPDATE = "receiveChannelUpdate"
RECEIVE_CHANNEL_DELETE = "receiveChannelDelete"

# Messages
RECEIVE_MESSAGE = "receiveMessage"
RECEIVE_MESSAGE_UPDATE = "receiveMessageUpdate"

# Friends
RECEIVE_FRIEND_REQUEST = "receiveFriendRequest"
RECEIVE_FRIEND_ACCEPT = "receiveFriendAccept"
RECEIVE_FRIEND_REMOVE = "receiveFriendRemove"

# Actions carried in message/channel payloads
ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_DELETED = "deleted"
VALID_ACTIONS = frozenset({ACTION_CREATED, ACTION_UPDATED, ACTION_DELETED})

# Serialized events larger than this are rejected before publishing
MAX_EVENT_SIZE = 64 * 1024
