"""rtspcam: publish a local USB camera as an RTSP stream.

Coordinates two external processes:
- ffmpeg, capturing and encoding the camera into H.264
- MediaMTX, the RTSP server the encoder publishes into

The package supervises both, reads their text output for readiness and
failure markers, and tears them down in order.
"""

__version__ = "1.0.0"
