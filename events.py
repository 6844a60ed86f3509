# Named events exchanged over the signaling WebSocket.
# Frames are JSON: {"event": name, "data": payload, "ack": id?}

CONNECTED = "connected"  # server -> client, {id}
ACK = "ack"  # server -> client, reply to a frame that carried an ack id

# client -> server
JOIN_ROOM = "join-room"  # roomId
REQUEST_SHARE = "request-share"  # {roomId}, acknowledged
CANCEL_SHARE = "cancel-share"  # roomId
STOP_SHARING = "stop-sharing"  # roomId

# server -> client
EXISTING_USERS = "existing-users"  # [memberId]
ROOM_JOINED = "room-joined"  # roomId
ROOM_ERROR = "room-error"  # message
USER_JOINED = "user-joined"  # memberId
USER_LEFT = "user-left"  # memberId
USER_STARTED_SHARING = "user-started-sharing"  # memberId
USER_STOPPED_SHARING = "user-stopped-sharing"  # memberId
CURRENT_SHARER = "current-sharer"  # memberId

# relayed; inbound {roomId, targetId, body}, outbound {userId, body}
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
