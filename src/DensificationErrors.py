"""
MIT License
Copyright (c) [2021-2024] [Luís Mendes, luis <dot> mendes _at_ tecnico.ulisboa.pt]

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is furnished
to do so, subject to the following conditions:The above copyright notice and
this permission notice shall be included in all copies or substantial portions
of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""

#!/usr/bin/env python
"""
Error types raised by the patch densification kernels and the resize/gradient providers.

ConfigurationError is raised before any buffer is allocated or any parallel
work is dispatched. ComputeError wraps a failure that happened while the
kernels were running; no partial result is ever returned alongside it.
"""


class DensificationError(Exception):
    """Base class for all densification failures."""
    pass


class ConfigurationError(DensificationError, ValueError):
    """Invalid dimensions, patch size, error floor or input image type."""
    pass


class ComputeError(DensificationError, RuntimeError):
    """Failure inside kernel dispatch, reduction or data transfer."""
    pass
