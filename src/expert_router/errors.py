# Copyright 2025 Lars Marowsky-Brée <lars@marowsky-bree.eu>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Errors raised by the routing and permission engines."""


class RouterError(Exception):
    """Base class for expert router errors."""


class StorageError(RouterError):
    """Saving a rule table failed."""


class UnknownIdentifierError(RouterError, ValueError):
    """An identifier outside its closed vocabulary, or an unknown rule/pattern id."""


class UnknownRequestError(RouterError, KeyError):
    """The gate holds no permission request with this id."""
