"""Session description handed to the transcoder on stdin."""

SDP_TEMPLATE = (
    "v=0\r\n"
    "o=- 0 0 IN IP4 {host}\r\n"
    "s={marker}\r\n"
    "c=IN IP4 {host}\r\n"
    "t=0 0\r\n"
    "m=audio {port} RTP/AVP {payload_type}\r\n"
    "a=rtpmap:{payload_type} {rtpmap}\r\n"
)


def build_session_description(
    relay_port: int,
    marker: str = "TalkbackRelay",
    payload_type: int = 111,
    rtpmap: str = "opus/48000/2",
    host: str = "127.0.0.1",
) -> str:
    """Render the SDP describing the relay endpoint.

    The session name carries the readiness marker: the transcoder echoes it on
    its diagnostic stream once it has parsed the description and opened input.

    Args:
        relay_port: UDP port the transcoder should listen on
        marker: Session name / readiness marker token
        payload_type: RTP payload type of the relayed audio
        rtpmap: Codec name, clock rate and channel count
        host: Loopback address of the relay

    Returns:
        SDP text with CRLF line endings
    """
    if not 0 < relay_port < 65536:
        raise ValueError(f"Invalid relay port: {relay_port}")

    return SDP_TEMPLATE.format(
        host=host,
        marker=marker,
        port=relay_port,
        payload_type=payload_type,
        rtpmap=rtpmap,
    )
