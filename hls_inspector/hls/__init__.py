"""
HLS playlist package.

- parser: Tag grammar, variable substitution and URI resolution
- navigator: Segment numbering, byte ranges and the playlist timeline
- overlap: Date range to segment overlap
- asset_list: Interstitial asset list documents
"""
