# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Utility functions and classes"""


class DummyProgress:
    """A tqdm-compatible stub for when progress indication is not needed"""
    def __init__(self, *args, **kwargs):
        self.n = 0
        self.total = kwargs.get("total")

    def __enter__(self):
        return self

    def __exit__(self, *args, **kwargs):
        return False

    def set_description(self, *args, **kwargs):
        pass

    def reset(self, total=None):
        self.n = 0
        self.total = total

    def update(self, n=1):
        self.n += n

    def set_postfix_str(self, *args, **kwargs):
        pass

    def close(self):
        pass


def chunks(items, size):
    """Yield successive slices of at most `size` items"""
    for i in range(-(-len(items)//size)):
        yield items[i*size:(i+1)*size]
