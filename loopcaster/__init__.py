"""LoopCaster - scheduled RTMP restreaming with a supervised FFmpeg process per stream."""

__version__ = '1.0.0'
