"""LightTrack browser activity reporter.

This package tracks which browser tab the user is viewing, extracts work context
(Jira issue keys, GitHub issues and pull requests) from a small set of whitelisted
domains, and forwards both to the LightTrack desktop companion over loopback HTTP.
It also ships the release-manifest generator used when publishing LightTrack builds.
"""

__version__ = "0.1.0"
