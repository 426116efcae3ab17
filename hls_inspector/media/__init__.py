"""
Media segment inspection package.

Pure Python decoders for the binary payloads an HLS stream carries:

- box_decoder: ISO-BMFF box tree, caption track indicators and timed metadata
- box_properties: Field decoders for well-known leaf boxes
- id3: ID3v2 frames carried in emsg and ID32 boxes
- scte35: SCTE-35 splice_info_section decoder
- probe: Segment type detection ahead of decoding
"""
