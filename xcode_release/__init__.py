"""Archive, sign, notarize and upload Xcode projects from CI"""

__version__ = "1.0.0"
