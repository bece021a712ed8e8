"""clipstitch — composition of short vertical clips into one export.

Trim, normalize, crossfade and audio-mix an ordered set of clips through
a shared ffmpeg engine, with a transition-free fallback render when the
primary filter graph fails. Also extracts still thumbnails from videos.
"""

import logging

logging.getLogger(__name__).addHandler(logging.NullHandler())
