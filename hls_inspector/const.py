PLAYLIST_HEADER = "#EXTM3U"
TAG_PREFIX = "#EXT"
COMMENT_PREFIX = "#"

# Tags that only make sense in a multivariant playlist
MULTIVARIANT_TAGS = {
    "EXT-X-MEDIA",
    "EXT-X-STREAM-INF",
    "EXT-X-I-FRAME-STREAM-INF",
    "EXT-X-SESSION-DATA",
    "EXT-X-SESSION-KEY",
    "EXT-X-CONTENT-STEERING",
}

# Tags that only make sense in a media playlist
MEDIA_TAGS = {
    "EXTINF",
    "EXT-X-TARGETDURATION",
    "EXT-X-MEDIA-SEQUENCE",
    "EXT-X-DISCONTINUITY-SEQUENCE",
    "EXT-X-ENDLIST",
    "EXT-X-PLAYLIST-TYPE",
    "EXT-X-I-FRAMES-ONLY",
    "EXT-X-PART-INF",
    "EXT-X-SERVER-CONTROL",
    "EXT-X-BYTERANGE",
    "EXT-X-DISCONTINUITY",
    "EXT-X-KEY",
    "EXT-X-MAP",
    "EXT-X-PROGRAM-DATE-TIME",
    "EXT-X-GAP",
    "EXT-X-BITRATE",
    "EXT-X-PART",
    "EXT-X-DATERANGE",
    "EXT-X-SKIP",
    "EXT-X-PRELOAD-HINT",
    "EXT-X-RENDITION-REPORT",
}

# Attributes each tag cannot do without
REQUIRED_ATTRIBUTES = {
    "EXT-X-MEDIA": ("TYPE", "GROUP-ID", "NAME"),
    "EXT-X-STREAM-INF": ("BANDWIDTH",),
    "EXT-X-I-FRAME-STREAM-INF": ("BANDWIDTH", "URI"),
    "EXT-X-SESSION-DATA": ("DATA-ID",),
    "EXT-X-SESSION-KEY": ("METHOD",),
    "EXT-X-KEY": ("METHOD",),
    "EXT-X-MAP": ("URI",),
    "EXT-X-DATERANGE": ("ID", "START-DATE"),
    "EXT-X-PART": ("URI", "DURATION"),
    "EXT-X-SKIP": ("SKIPPED-SEGMENTS",),
    "EXT-X-PRELOAD-HINT": ("TYPE", "URI"),
    "EXT-X-RENDITION-REPORT": ("URI",),
    "EXT-X-CONTENT-STEERING": ("SERVER-URI",),
}

# Attributes whose value must be numeric wherever they appear
NUMERIC_ATTRIBUTES = {
    "BANDWIDTH",
    "AVERAGE-BANDWIDTH",
    "FRAME-RATE",
    "DURATION",
    "PLANNED-DURATION",
    "SKIPPED-SEGMENTS",
    "TIME-OFFSET",
    "PART-TARGET",
    "LAST-MSN",
    "LAST-PART",
    "BYTERANGE-START",
    "BYTERANGE-LENGTH",
    "X-RESUME-OFFSET",
    "X-PLAYOUT-LIMIT",
}

# Attributes whose value must be a quoted string wherever they appear
QUOTED_STRING_ATTRIBUTES = {"ID", "CLASS", "START-DATE", "END-DATE", "GROUP-ID"}

# Attributes that reference another resource
URI_ATTRIBUTES = ("URI", "SERVER-URI", "X-ASSET-URI", "X-ASSET-LIST")

# Date-range attributes carrying a binary splice cue
SCTE35_ATTRIBUTES = ("SCTE35-OUT", "SCTE35-IN", "SCTE35-CMD")

# Scheme identifiers of event message boxes carrying ID3 frames
ID3_EMSG_SCHEMES = {
    "https://aomedia.org/emsg/ID3",
    "https://developer.apple.com/streaming/emsg-id3",
}

SEGMENT_CONTENT_TYPES = {
    "video/mp4": "mp4",
    "video/iso.segment": "mp4",
    "audio/mp4": "mp4",
    "application/mp4": "mp4",
    "text/vtt": "webvtt",
    "text/plain": "webvtt",
}

SEGMENT_EXTENSIONS = {
    "mp4": "mp4",
    "m4s": "mp4",
    "m4a": "mp4",
    "m4v": "mp4",
    "cmfv": "mp4",
    "cmfa": "mp4",
    "vtt": "webvtt",
    "webvtt": "webvtt",
}

# Tags whose value is an attribute list
ATTRIBUTE_LIST_TAGS = {
    "EXT-X-MEDIA",
    "EXT-X-STREAM-INF",
    "EXT-X-I-FRAME-STREAM-INF",
    "EXT-X-SESSION-DATA",
    "EXT-X-SESSION-KEY",
    "EXT-X-CONTENT-STEERING",
    "EXT-X-KEY",
    "EXT-X-MAP",
    "EXT-X-DATERANGE",
    "EXT-X-DEFINE",
    "EXT-X-SKIP",
    "EXT-X-PART",
    "EXT-X-PART-INF",
    "EXT-X-SERVER-CONTROL",
    "EXT-X-PRELOAD-HINT",
    "EXT-X-RENDITION-REPORT",
    "EXT-X-START",
}

# Tags whose value is a single decimal integer
INTEGER_TAGS = {
    "EXT-X-VERSION",
    "EXT-X-TARGETDURATION",
    "EXT-X-MEDIA-SEQUENCE",
    "EXT-X-DISCONTINUITY-SEQUENCE",
    "EXT-X-BITRATE",
}
