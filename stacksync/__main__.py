#!/usr/bin/env python3

import stacksync.cli


if __name__ == "__main__":
    stacksync.cli.main()
