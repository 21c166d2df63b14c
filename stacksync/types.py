#!/usr/bin/env python3

from typing import NewType

# A bunch of commonly used type definitions.

# commit 3f72e04eeabcc7e77f127d3e7baf2f5ccdb148ee
GitCommitHash = NewType("GitCommitHash", str)

# tree 3f72e04eeabcc7e77f127d3e7baf2f5ccdb148ee
GitTreeHash = NewType("GitTreeHash", str)

# Output of git patch-id --stable; the empty string for an empty diff
ContentHash = NewType("ContentHash", str)

GitHubNumber = NewType("GitHubNumber", int)  # aka 1234 (as in #1234)

# GraphQL ID that identifies Repository from GitHub schema;
# aka MDExOlB1bGxSZXF1ZXN0MjU2NDM3MjQw
GitHubRepositoryId = NewType("GitHubRepositoryId", str)

# aka 3b5c0e1f9d6a4c2e8f7a1b0c9d8e7f6a (as in Stack-Id: 3b5c...)
CommitIdentity = NewType("CommitIdentity", str)
