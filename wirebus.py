"""
Pure-Python client engine for D-Bus <https://www.freedesktop.org/wiki/Software/dbus/>.
Speaks the D-Bus wire protocol directly over Unix-domain or TCP sockets,
without needing libdbus: marshalling of typed arguments, construction
and parsing of messages, correlation of replies with calls, and bus-name
negotiation with the daemon.

Blocking use is safe from multiple threads; there is also the option of
hooking a connection into an asyncio event loop.
"""
#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import sys
import os
import errno
import enum
import re
import struct
import socket
import select
import threading
import time
import logging
import collections
from weakref import \
    WeakValueDictionary
import asyncio

_logger = logging.getLogger(__name__)

class DBUS :
    "useful definitions adapted from the D-Bus specification. You will need to use" \
    " the constants, but apart from that, see the enum classes and the more Pythonic" \
    " wrappers defined outside this class in preference to the raw tables."

    # Message byte order
    LITTLE_ENDIAN = 'l'
    BIG_ENDIAN = 'B'

    # Protocol version.
    MAJOR_PROTOCOL_VERSION = 1

    # Type code that is never equal to a legitimate type code
    TYPE_INVALID = 0

    # Primitive types
    TYPE_BYTE = ord('y') # 8-bit unsigned integer
    TYPE_BOOLEAN = ord('b') # boolean
    TYPE_INT16 = ord('n') # 16-bit signed integer
    TYPE_UINT16 = ord('q') # 16-bit unsigned integer
    TYPE_INT32 = ord('i') # 32-bit signed integer
    TYPE_UINT32 = ord('u') # 32-bit unsigned integer
    TYPE_INT64 = ord('x') # 64-bit signed integer
    TYPE_UINT64 = ord('t') # 64-bit unsigned integer
    TYPE_DOUBLE = ord('d') # 8-byte double in IEEE 754 format
    TYPE_STRING = ord('s') # UTF-8 encoded, nul-terminated Unicode string
    TYPE_OBJECT_PATH = ord('o') # D-Bus object path
    TYPE_SIGNATURE = ord('g') # D-Bus type signature
    TYPE_UNIX_FD = ord('h') # unix file descriptor

    # Compound types
    TYPE_ARRAY = ord('a') # D-Bus array type
    TYPE_VARIANT = ord('v') # D-Bus variant type

    TYPE_STRUCT = ord('r') # a struct; however, type signatures use STRUCT_BEGIN/END_CHAR
    TYPE_DICT_ENTRY = ord('e') # a dict entry; however, type signatures use DICT_ENTRY_BEGIN/END_CHAR

    # characters other than typecodes that appear in type signatures
    STRUCT_BEGIN_CHAR = ord('(') # start of a struct type in a type signature
    STRUCT_END_CHAR = ord(')') # end of a struct type in a type signature
    DICT_ENTRY_BEGIN_CHAR = ord('{') # start of a dict entry type in a type signature
    DICT_ENTRY_END_CHAR = ord('}') # end of a dict entry type in a type signature

    basic_types = frozenset \
      ((
        TYPE_BYTE,
        TYPE_BOOLEAN,
        TYPE_INT16,
        TYPE_UINT16,
        TYPE_INT32,
        TYPE_UINT32,
        TYPE_INT64,
        TYPE_UINT64,
        TYPE_DOUBLE,
        TYPE_STRING,
        TYPE_OBJECT_PATH,
        TYPE_SIGNATURE,
        TYPE_UNIX_FD,
      ))
    fixed_types = basic_types - {TYPE_STRING, TYPE_OBJECT_PATH, TYPE_SIGNATURE}

    type_alignment = \
        { # alignment in bytes of each kind of value on the wire
            TYPE_BYTE : 1,
            TYPE_BOOLEAN : 4,
            TYPE_INT16 : 2,
            TYPE_UINT16 : 2,
            TYPE_INT32 : 4,
            TYPE_UINT32 : 4,
            TYPE_INT64 : 8,
            TYPE_UINT64 : 8,
            TYPE_DOUBLE : 8,
            TYPE_STRING : 4,
            TYPE_OBJECT_PATH : 4,
            TYPE_SIGNATURE : 1,
            TYPE_UNIX_FD : 4,
            TYPE_ARRAY : 4,
            TYPE_VARIANT : 1,
            TYPE_STRUCT : 8,
            TYPE_DICT_ENTRY : 8,
        }

    def int_subtype(i, bits, signed) :
        "returns integer i after checking that it fits in the given number of bits."
        if signed :
            lo = - 1 << bits - 1
            hi = (1 << bits - 1) - 1
        else :
            lo = 0
            hi = (1 << bits) - 1
        #end if
        if i < lo or i > hi :
            raise MarshalError \
              (
                "%d not in range of %s %d-bit value" % (i, ("unsigned", "signed")[signed], bits)
              )
        #end if
        return \
            int(i)
    #end int_subtype

    subtype_byte = lambda i : DBUS.int_subtype(i, 8, False)
    subtype_int16 = lambda i : DBUS.int_subtype(i, 16, True)
    subtype_uint16 = lambda i : DBUS.int_subtype(i, 16, False)
    subtype_int32 = lambda i : DBUS.int_subtype(i, 32, True)
    subtype_uint32 = lambda i : DBUS.int_subtype(i, 32, False)
    subtype_int64 = lambda i : DBUS.int_subtype(i, 64, True)
    subtype_uint64 = lambda i : DBUS.int_subtype(i, 64, False)

    int_convert = \
        { # range checks for the various D-Bus integer types
            TYPE_BYTE : subtype_byte,
            TYPE_INT16 : subtype_int16,
            TYPE_UINT16 : subtype_uint16,
            TYPE_INT32 : subtype_int32,
            TYPE_UINT32 : subtype_uint32,
            TYPE_INT64 : subtype_int64,
            TYPE_UINT64 : subtype_uint64,
            TYPE_UNIX_FD : subtype_uint32,
        }

    # subclasses for distinguishing various special kinds of D-Bus values:

    class ObjectPath(str) :
        "an object path string."

        def __repr__(self) :
            return \
                "%s(%s)" % (self.__class__.__name__, super().__repr__())
        #end __repr__

    #end ObjectPath

    class Signature(str) :
        "a type-signature string."

        def __repr__(self) :
            return \
                "%s(%s)" % (self.__class__.__name__, super().__repr__())
        #end __repr__

    #end Signature

    class UnixFD(int) :
        "a file-descriptor integer. Only the index value travels over the wire."

        def __repr__(self) :
            return \
                "%s(%s)" % (self.__class__.__name__, super().__repr__())
        #end __repr__

    #end UnixFD

    MAXIMUM_NAME_LENGTH = 255 # max length in bytes of a bus name, interface or member (object paths are unlimited)

    MAXIMUM_SIGNATURE_LENGTH = 255 # fits in a byte

    MAXIMUM_ARRAY_LENGTH = 67108864 # 2 * 26
    MAXIMUM_ARRAY_LENGTH_BITS = 26 # to store the max array size

    MAXIMUM_MESSAGE_LENGTH = MAXIMUM_ARRAY_LENGTH * 2
    MAXIMUM_MESSAGE_LENGTH_BITS = 27

    MAXIMUM_TYPE_RECURSION_DEPTH = 32 # each for arrays and structs
    MAXIMUM_VALUE_NESTING_DEPTH = 64 # including variants, when decoding

    MAXIMUM_SERIAL = 0xFFFFFFFF

    # Types of message

    MESSAGE_TYPE_INVALID = 0 # never a valid message type
    MESSAGE_TYPE_METHOD_CALL = 1
    MESSAGE_TYPE_METHOD_RETURN = 2
    MESSAGE_TYPE_ERROR = 3
    MESSAGE_TYPE_SIGNAL = 4

    NUM_MESSAGE_TYPES = 5

    # Header flags
    HEADER_FLAG_NO_REPLY_EXPECTED = 0x1
    HEADER_FLAG_NO_AUTO_START = 0x2
    HEADER_FLAG_ALLOW_INTERACTIVE_AUTHORIZATION = 0x4

    # Header fields

    HEADER_FIELD_INVALID = 0
    HEADER_FIELD_PATH = 1
    HEADER_FIELD_INTERFACE = 2
    HEADER_FIELD_MEMBER = 3
    HEADER_FIELD_ERROR_NAME = 4
    HEADER_FIELD_REPLY_SERIAL = 5
    HEADER_FIELD_DESTINATION = 6
    HEADER_FIELD_SENDER = 7
    HEADER_FIELD_SIGNATURE = 8
    HEADER_FIELD_UNIX_FDS = 9

    HEADER_FIELD_LAST = HEADER_FIELD_UNIX_FDS

    header_field_signatures = \
        { # the type each known header field must have
            HEADER_FIELD_PATH : "o",
            HEADER_FIELD_INTERFACE : "s",
            HEADER_FIELD_MEMBER : "s",
            HEADER_FIELD_ERROR_NAME : "s",
            HEADER_FIELD_REPLY_SERIAL : "u",
            HEADER_FIELD_DESTINATION : "s",
            HEADER_FIELD_SENDER : "s",
            HEADER_FIELD_SIGNATURE : "g",
            HEADER_FIELD_UNIX_FDS : "u",
        }

    HEADER_SIGNATURE = "yyyyuua(yv)"
    MINIMUM_HEADER_SIZE = 16 # smallest header size that can occur (missing required fields, though)

    # Errors
    ERROR_FAILED = "org.freedesktop.DBus.Error.Failed" # generic error
    ERROR_NO_MEMORY = "org.freedesktop.DBus.Error.NoMemory"
    ERROR_SERVICE_UNKNOWN = "org.freedesktop.DBus.Error.ServiceUnknown"
    ERROR_NAME_HAS_NO_OWNER = "org.freedesktop.DBus.Error.NameHasNoOwner"
    ERROR_NO_REPLY = "org.freedesktop.DBus.Error.NoReply"
    ERROR_IO_ERROR = "org.freedesktop.DBus.Error.IOError"
    ERROR_BAD_ADDRESS = "org.freedesktop.DBus.Error.BadAddress"
    ERROR_NOT_SUPPORTED = "org.freedesktop.DBus.Error.NotSupported"
    ERROR_LIMITS_EXCEEDED = "org.freedesktop.DBus.Error.LimitsExceeded"
    ERROR_ACCESS_DENIED = "org.freedesktop.DBus.Error.AccessDenied"
    ERROR_AUTH_FAILED = "org.freedesktop.DBus.Error.AuthFailed"
    ERROR_NO_SERVER = "org.freedesktop.DBus.Error.NoServer"
    ERROR_TIMEOUT = "org.freedesktop.DBus.Error.Timeout"
    ERROR_DISCONNECTED = "org.freedesktop.DBus.Error.Disconnected"
    ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"
    ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
    ERROR_MATCH_RULE_NOT_FOUND = "org.freedesktop.DBus.Error.MatchRuleNotFound"
    ERROR_INVALID_SIGNATURE = "org.freedesktop.DBus.Error.InvalidSignature"
    ERROR_INCONSISTENT_MESSAGE = "org.freedesktop.DBus.Error.InconsistentMessage"

    # well-known bus types
    BUS_SESSION = 0
    BUS_SYSTEM = 1
    BUS_STARTER = 2

    # default system bus, used if DBUS_SYSTEM_BUS_ADDRESS is not set
    SYSTEM_BUS_DEFAULT_ADDRESS = "unix:path=/var/run/dbus/system_bus_socket"

    # Bus names
    SERVICE_DBUS = "org.freedesktop.DBus" # used to talk to the bus itself

    # Paths
    PATH_DBUS = "/org/freedesktop/DBus" # object path used to talk to the bus itself
    PATH_LOCAL = "/org/freedesktop/DBus/Local" # path used in local/in-process-generated messages

    # Interfaces
    INTERFACE_DBUS = "org.freedesktop.DBus" # interface exported by the object with SERVICE_DBUS and PATH_DBUS
    INTERFACE_LOCAL = "org.freedesktop.DBus.Local" # methods can only be invoked locally

    # Owner flags for request_name
    NAME_FLAG_ALLOW_REPLACEMENT = 0x1
    NAME_FLAG_REPLACE_EXISTING = 0x2
    NAME_FLAG_DO_NOT_QUEUE = 0x4

    # Replies to request for a name
    REQUEST_NAME_REPLY_PRIMARY_OWNER = 1
    REQUEST_NAME_REPLY_IN_QUEUE = 2
    REQUEST_NAME_REPLY_EXISTS = 3
    REQUEST_NAME_REPLY_ALREADY_OWNER = 4

    # Replies to releasing a name
    RELEASE_NAME_REPLY_RELEASED = 1
    RELEASE_NAME_REPLY_NON_EXISTENT = 2
    RELEASE_NAME_REPLY_NOT_OWNER = 3

    # timeouts, in seconds unless one of these special values
    TIMEOUT_INFINITE = 0x7fffffff
    TIMEOUT_USE_DEFAULT = -1
    DEFAULT_TIMEOUT = 25 # same as libdbus

    # dispatch status
    DISPATCH_DATA_REMAINS = 0 # more data available
    DISPATCH_COMPLETE = 1 # all available data has been processed

#end DBUS

#+
# Enumerations of protocol constants
#-

class MESSAGE_TYPE(enum.IntEnum) :
    "the kinds of message, with their codes on the wire."

    INVALID = DBUS.MESSAGE_TYPE_INVALID
    METHOD_CALL = DBUS.MESSAGE_TYPE_METHOD_CALL
    METHOD_RETURN = DBUS.MESSAGE_TYPE_METHOD_RETURN
    ERROR = DBUS.MESSAGE_TYPE_ERROR
    SIGNAL = DBUS.MESSAGE_TYPE_SIGNAL
#end MESSAGE_TYPE

class BUS_TYPE(enum.IntEnum) :
    "the well-known buses."

    SESSION = DBUS.BUS_SESSION
    SYSTEM = DBUS.BUS_SYSTEM
    STARTER = DBUS.BUS_STARTER
#end BUS_TYPE

class NAME_FLAG(enum.IntFlag) :
    "flags for requesting a bus name; combine with “|”."

    ALLOW_REPLACEMENT = DBUS.NAME_FLAG_ALLOW_REPLACEMENT
    REPLACE_EXISTING = DBUS.NAME_FLAG_REPLACE_EXISTING
    DO_NOT_QUEUE = DBUS.NAME_FLAG_DO_NOT_QUEUE
#end NAME_FLAG

class REQUEST_NAME_REPLY(enum.IntEnum) :
    "outcomes of requesting a bus name. None of these indicates a failure of" \
    " the request itself."

    PRIMARY_OWNER = DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
    IN_QUEUE = DBUS.REQUEST_NAME_REPLY_IN_QUEUE
    EXISTS = DBUS.REQUEST_NAME_REPLY_EXISTS
    ALREADY_OWNER = DBUS.REQUEST_NAME_REPLY_ALREADY_OWNER
#end REQUEST_NAME_REPLY

class RELEASE_NAME_REPLY(enum.IntEnum) :
    "outcomes of releasing a bus name."

    RELEASED = DBUS.RELEASE_NAME_REPLY_RELEASED
    NON_EXISTENT = DBUS.RELEASE_NAME_REPLY_NON_EXISTENT
    NOT_OWNER = DBUS.RELEASE_NAME_REPLY_NOT_OWNER
#end RELEASE_NAME_REPLY

class CONNECTION_STATE(enum.Enum) :
    "lifecycle of a Connection. Connections are only handed out once they" \
    " have reached AUTHENTICATED; CLOSED is final."

    OPEN = 1
    AUTHENTICATED = 2
    CLOSED = 3
#end CONNECTION_STATE

_all_name_flags = \
    (
        DBUS.NAME_FLAG_ALLOW_REPLACEMENT
    |
        DBUS.NAME_FLAG_REPLACE_EXISTING
    |
        DBUS.NAME_FLAG_DO_NOT_QUEUE
    )

_native_byteorder = (DBUS.BIG_ENDIAN, DBUS.LITTLE_ENDIAN)[sys.byteorder == "little"]

#+
# Exceptions
#-

class DBusError(Exception) :
    "for raising an exception that reports a D-Bus error name and accompanying message." \
    " All errors detected by this module are instances of subclasses of this."

    def __init__(self, name, message) :
        self.name = name
        self.message = message
        self.args = ("%s: %s" % (name, message),)
    #end __init__

    @staticmethod
    def from_message(message) :
        "converts a received error Message into the corresponding exception object," \
        " without raising it. The error name and text are kept exactly as sent."
        if not isinstance(message, Message) or message.type != DBUS.MESSAGE_TYPE_ERROR :
            raise TypeError("message must be an error Message")
        #end if
        args = message.objects
        if len(args) != 0 and isinstance(args[0], str) :
            text = args[0]
        else :
            text = ""
        #end if
        if message.error_name == DBUS.ERROR_NO_MEMORY :
            result = OutOfMemory(text)
        else :
            result = DaemonError(message.error_name, text)
        #end if
        return \
            result
    #end from_message

#end DBusError

class ConnectError(DBusError) :
    "could not set up a connection: unreachable daemon, malformed address or" \
    " rejected authentication."

    def __init__(self, message, name = DBUS.ERROR_NO_SERVER) :
        super().__init__(name, message)
    #end __init__

#end ConnectError

class UnsupportedTransport(ConnectError) :
    "the address names a transport that this module does not know how to use."

    def __init__(self, message) :
        super().__init__(message, DBUS.ERROR_NOT_SUPPORTED)
    #end __init__

#end UnsupportedTransport

class MarshalError(DBusError) :
    "a value cannot be encoded: wrong kind of value for its type, grammar" \
    " violation, embedded NUL or size limit exceeded."

    def __init__(self, message, name = DBUS.ERROR_INVALID_ARGS) :
        super().__init__(name, message)
    #end __init__

#end MarshalError

class UnmarshalError(DBusError) :
    "received data does not decode to a valid message."

    def __init__(self, message, name = DBUS.ERROR_INCONSISTENT_MESSAGE) :
        super().__init__(name, message)
    #end __init__

#end UnmarshalError

class Truncated(UnmarshalError) :
    "decoding ran out of data before the end of a value."
    pass
#end Truncated

class SendError(DBusError) :
    "a message could not be sent."

    def __init__(self, message, name = DBUS.ERROR_FAILED) :
        super().__init__(name, message)
    #end __init__

#end SendError

class NotConnected(SendError) :
    "the connection is closed."

    def __init__(self, message = "connection is closed") :
        super().__init__(message, DBUS.ERROR_DISCONNECTED)
    #end __init__

#end NotConnected

class OutOfMemory(SendError) :
    "the transport or the daemon ran out of memory. Treat as fatal for the" \
    " operation; it is never retried."

    def __init__(self, message) :
        super().__init__(message, DBUS.ERROR_NO_MEMORY)
    #end __init__

#end OutOfMemory

class InvalidName(DBusError) :
    "an object path, interface, member, error or bus name does not follow the" \
    " D-Bus naming rules."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_INVALID_ARGS, message)
    #end __init__

#end InvalidName

class MessageSealed(DBusError) :
    "attempt to modify a message that has already been sent or was received."

    def __init__(self, message = "message has been locked against further changes") :
        super().__init__(DBUS.ERROR_FAILED, message)
    #end __init__

#end MessageSealed

class Timeout(DBusError) :
    "an awaited reply did not arrive in time."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_NO_REPLY, message)
    #end __init__

#end Timeout

class DaemonError(DBusError) :
    "an error reported by the other end of the connection, with its name and" \
    " message exactly as received."
    pass
#end DaemonError

class _DummyError :
    # like an Error, but is never set and so will never raise.

    @property
    def is_set(self) :
        return \
            False
    #end is_set

    def raise_if_set(self) :
        pass
    #end raise_if_set

#end _DummyError

class Error :
    "collects the details of a failed operation instead of having it raise an" \
    " exception. You can create one by calling the init method, and pass it as" \
    " the error argument to the calls that accept one; afterwards, check is_set."

    __slots__ = ("_exception",) # to forestall typos

    def __init__(self) :
        self._exception = None
    #end __init__

    @classmethod
    def init(celf) :
        "for consistency with other classes that don’t want caller to instantiate directly."
        return \
            celf()
    #end init

    def set(self, name, msg) :
        self._exception = DaemonError(name, msg)
    #end set

    def set_from_exception(self, exception) :
        if not isinstance(exception, DBusError) :
            raise TypeError("exception must be a DBusError")
        #end if
        self._exception = exception
    #end set_from_exception

    def set_from_message(self, message) :
        "fills in this Error object from message if it is an error message." \
        " Returns whether it was or not."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        is_error = message.type == DBUS.MESSAGE_TYPE_ERROR
        if is_error :
            self._exception = DBusError.from_message(message)
        #end if
        return \
            is_error
    #end set_from_message

    @property
    def is_set(self) :
        return \
            self._exception != None
    #end is_set

    def has_name(self, name) :
        return \
            self._exception != None and self._exception.name == name
    #end has_name

    @property
    def name(self) :
        return \
            (lambda : None, lambda : self._exception.name)[self._exception != None]()
    #end name

    @property
    def message(self) :
        return \
            (lambda : None, lambda : self._exception.message)[self._exception != None]()
    #end message

    @property
    def exception(self) :
        "the exception that would be raised by raise_if_set, or None."
        return \
            self._exception
    #end exception

    def raise_if_set(self) :
        if self._exception != None :
            raise self._exception
        #end if
    #end raise_if_set

#end Error

def _get_error(error) :
    # Common routine which processes an optional user-supplied Error
    # argument, and returns 2 Error-like objects: the first a real
    # Error object to be filled in when the operation fails, the second
    # is either the same Error object or a separate _DummyError object
    # on which to call raise_if_set() afterwards. The procedure for
    # using this is
    #
    #     error, my_error = _get_error(error)
    #     try :
    #         ... do the work ...
    #     except DBusError as fail :
    #         error.set_from_exception(fail)
    #     #end try
    #     my_error.raise_if_set()
    #
    # If the user passes None for error, then an internal Error object
    # is created, and returned as both results. That way, if it is
    # filled in, calling raise_if_set() will automatically raise the
    # exception.
    # But if the user passed their own Error object, then it is
    # returned as the first result, and a _DummyError as the second
    # result. This means the raise_if_set() call becomes a noop, and
    # it is up to the caller to check if their Error object was filled
    # in or not.
    if error != None and not isinstance(error, Error) :
        raise TypeError("error must be an Error")
    #end if
    if error != None :
        my_error = _DummyError()
    else :
        my_error = Error()
        error = my_error
    #end if
    return \
        error, my_error
#end _get_error

def _get_timeout(timeout) :
    # converts a timeout argument to a number of seconds, or None for no limit.
    if timeout == None or timeout == DBUS.TIMEOUT_INFINITE :
        timeout = None
    elif timeout == DBUS.TIMEOUT_USE_DEFAULT :
        timeout = DBUS.DEFAULT_TIMEOUT
    elif timeout < 0 :
        raise ValueError("timeout must not be negative")
    #end if
    return \
        timeout
#end _get_timeout

#+
# Syntax validation
#-

_path_re = re.compile(r"/|(?:/[A-Za-z0-9_]+)+")
_member_re = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_interface_re = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)+")
_unique_name_re = re.compile(r":[A-Za-z0-9_-]+(?:\.[A-Za-z0-9_-]+)+")
_well_known_name_re = re.compile(r"[A-Za-z_-][A-Za-z0-9_-]*(?:\.[A-Za-z_-][A-Za-z0-9_-]*)+")

def _is_valid_path(path) :
    return \
        isinstance(path, str) and _path_re.fullmatch(path) != None
#end _is_valid_path

def _is_valid_member(name) :
    return \
        (
            isinstance(name, str)
        and
            len(name) <= DBUS.MAXIMUM_NAME_LENGTH
        and
            _member_re.fullmatch(name) != None
        )
#end _is_valid_member

def _is_valid_interface(name) :
    return \
        (
            isinstance(name, str)
        and
            len(name) <= DBUS.MAXIMUM_NAME_LENGTH
        and
            _interface_re.fullmatch(name) != None
        )
#end _is_valid_interface

def _is_valid_well_known_name(name) :
    return \
        (
            isinstance(name, str)
        and
            len(name) <= DBUS.MAXIMUM_NAME_LENGTH
        and
            _well_known_name_re.fullmatch(name) != None
        )
#end _is_valid_well_known_name

def _is_valid_bus_name(name) :
    return \
        (
            _is_valid_well_known_name(name)
        or
                isinstance(name, str)
            and
                len(name) <= DBUS.MAXIMUM_NAME_LENGTH
            and
                _unique_name_re.fullmatch(name) != None
        )
#end _is_valid_bus_name

def _validate(valid, what, name, error) :
    # common routine for the validate_xxx functions.
    error, my_error = _get_error(error)
    if not valid :
        error.set_from_exception(InvalidName("invalid %s %r" % (what, name)))
    #end if
    my_error.raise_if_set()
    return \
        valid
#end _validate

def validate_path(path, error = None) :
    "checks that path is a valid object path."
    return \
        _validate(_is_valid_path(path), "object path", path, error)
#end validate_path

def validate_interface(name, error = None) :
    return \
        _validate(_is_valid_interface(name), "interface name", name, error)
#end validate_interface

def validate_member(name, error = None) :
    return \
        _validate(_is_valid_member(name), "member name", name, error)
#end validate_member

def validate_error_name(name, error = None) :
    "error names follow the same rules as interface names."
    return \
        _validate(_is_valid_interface(name), "error name", name, error)
#end validate_error_name

def validate_bus_name(name, error = None) :
    "accepts both unique (“:1.42”) and well-known (“org.example.App”) bus names."
    return \
        _validate(_is_valid_bus_name(name), "bus name", name, error)
#end validate_bus_name

def validate_well_known_name(name, error = None) :
    "accepts only well-known bus names, as may be requested from the daemon."
    return \
        _validate(_is_valid_well_known_name(name), "well-known bus name", name, error)
#end validate_well_known_name

#+
# Type signatures
#-

class Type :
    "a single complete D-Bus type, as parsed from a signature. Do not instantiate" \
    " directly; get from parse_signature or parse_single_signature. code is one of" \
    " the DBUS.TYPE_xxx codes; content is None for basic types and variants, the" \
    " element Type for arrays, and a tuple of field Types for structs and dict entries."

    __slots__ = ("code", "content", "signature") # to forestall typos

    def __init__(self, code, content, signature) :
        self.code = code
        self.content = content
        self.signature = signature
    #end __init__

    @property
    def is_basic(self) :
        return \
            self.code in DBUS.basic_types
    #end is_basic

    @property
    def is_fixed(self) :
        return \
            self.code in DBUS.fixed_types
    #end is_fixed

    @property
    def alignment(self) :
        return \
            DBUS.type_alignment[self.code]
    #end alignment

    @property
    def is_dict(self) :
        "is this an array of dict entries."
        return \
            self.code == DBUS.TYPE_ARRAY and self.content.code == DBUS.TYPE_DICT_ENTRY
    #end is_dict

    def __eq__(self, other) :
        return \
            isinstance(other, Type) and other.signature == self.signature
    #end __eq__

    def __hash__(self) :
        return \
            hash(self.signature)
    #end __hash__

    def __repr__(self) :
        return \
            "%s(%s)" % (self.__class__.__name__, repr(self.signature))
    #end __repr__

#end Type

def _parse_signature(signature, fail) :
    # parses signature into a list of Type objects, raising exception
    # class fail on any syntax error.

    pos = 0

    def parse_one(array_depth, struct_depth) :
        nonlocal pos
        if pos == len(signature) :
            raise fail("signature %s ends prematurely" % repr(signature))
        #end if
        start = pos
        code = ord(signature[pos])
        pos += 1
        if code in DBUS.basic_types or code == DBUS.TYPE_VARIANT :
            result = Type(code, None, signature[start:pos])
        elif code == DBUS.TYPE_ARRAY :
            if array_depth == DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
                raise fail("arrays nested too deeply in signature %s" % repr(signature))
            #end if
            if pos < len(signature) and ord(signature[pos]) == DBUS.DICT_ENTRY_BEGIN_CHAR :
                entry_start = pos
                pos += 1
                if struct_depth == DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
                    raise fail("structs nested too deeply in signature %s" % repr(signature))
                #end if
                key_type = parse_one(array_depth + 1, struct_depth + 1)
                if not key_type.is_basic :
                    raise fail("dict key must be a basic type in signature %s" % repr(signature))
                #end if
                if pos < len(signature) and ord(signature[pos]) == DBUS.DICT_ENTRY_END_CHAR :
                    raise fail("dict entry has no value type in signature %s" % repr(signature))
                #end if
                value_type = parse_one(array_depth + 1, struct_depth + 1)
                if pos == len(signature) or ord(signature[pos]) != DBUS.DICT_ENTRY_END_CHAR :
                    raise fail \
                      (
                        "dict entry must hold exactly one key and one value in signature %s"
                      %
                        repr(signature)
                      )
                #end if
                pos += 1
                element = Type \
                  (
                    DBUS.TYPE_DICT_ENTRY,
                    (key_type, value_type),
                    signature[entry_start:pos]
                  )
            else :
                element = parse_one(array_depth + 1, struct_depth)
            #end if
            result = Type(code, element, signature[start:pos])
        elif code == DBUS.STRUCT_BEGIN_CHAR :
            if struct_depth == DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
                raise fail("structs nested too deeply in signature %s" % repr(signature))
            #end if
            fields = []
            while True :
                if pos == len(signature) :
                    raise fail("unterminated struct in signature %s" % repr(signature))
                #end if
                if ord(signature[pos]) == DBUS.STRUCT_END_CHAR :
                    pos += 1
                    break
                #end if
                fields.append(parse_one(array_depth, struct_depth + 1))
            #end while
            if len(fields) == 0 :
                raise fail("empty struct in signature %s" % repr(signature))
            #end if
            result = Type(DBUS.TYPE_STRUCT, tuple(fields), signature[start:pos])
        else :
            raise fail \
              (
                "unexpected character %s in signature %s" % (repr(signature[start]), repr(signature))
              )
        #end if
        return \
            result
    #end parse_one

#begin _parse_signature
    if not isinstance(signature, str) :
        raise TypeError("signature must be a string")
    #end if
    if len(signature.encode("utf-8")) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
        raise fail("signature longer than %d bytes" % DBUS.MAXIMUM_SIGNATURE_LENGTH)
    #end if
    result = []
    while pos < len(signature) :
        result.append(parse_one(0, 0))
    #end while
    return \
        result
#end _parse_signature

def parse_signature(signature) :
    "parses a signature consisting of zero or more complete types into a list of" \
    " Type objects. Raises MarshalError if the signature is not valid."
    return \
        _parse_signature(signature, MarshalError)
#end parse_signature

def parse_single_signature(signature) :
    "parses a signature that must consist of exactly one complete type, returning" \
    " the Type."
    result = _parse_signature(signature, MarshalError)
    if len(result) != 1 :
        raise MarshalError("signature %s is not a single complete type" % repr(signature))
    #end if
    return \
        result[0]
#end parse_single_signature

def signature_validate(signature, error = None) :
    "is signature a valid sequence of zero or more complete types."
    error, my_error = _get_error(error)
    try :
        _parse_signature(signature, MarshalError)
        result = True
    except MarshalError as fail :
        error.set_from_exception(fail)
        result = False
    #end try
    my_error.raise_if_set()
    return \
        result
#end signature_validate

def signature_validate_single(signature, error = None) :
    "is signature a valid single complete type."
    error, my_error = _get_error(error)
    try :
        parse_single_signature(signature)
        result = True
    except MarshalError as fail :
        error.set_from_exception(fail)
        result = False
    #end try
    my_error.raise_if_set()
    return \
        result
#end signature_validate_single

_SIGNATURE_TYPE = Type(DBUS.TYPE_SIGNATURE, None, "g")
_HEADER_TYPES = parse_signature(DBUS.HEADER_SIGNATURE)

#+
# Typed values
#-

def _convert(type, value) :
    # checks that value is acceptable for the specified Type, and returns it in
    # the standard Python representation for that type.
    code = type.code
    if code in DBUS.int_convert :
        if not isinstance(value, int) :
            raise MarshalError("%s value expected for type %s" % (repr(value), type.signature))
        #end if
        result = DBUS.int_convert[code](value)
        if code == DBUS.TYPE_UNIX_FD :
            result = DBUS.UnixFD(result)
        #end if
    elif code == DBUS.TYPE_BOOLEAN :
        if not isinstance(value, int) or value not in (0, 1) :
            raise MarshalError("boolean value expected, got %s" % repr(value))
        #end if
        result = bool(value)
    elif code == DBUS.TYPE_DOUBLE :
        if isinstance(value, bool) or not isinstance(value, (int, float)) :
            raise MarshalError("number expected for double, got %s" % repr(value))
        #end if
        result = float(value)
    elif code in (DBUS.TYPE_STRING, DBUS.TYPE_OBJECT_PATH, DBUS.TYPE_SIGNATURE) :
        if not isinstance(value, str) :
            raise MarshalError("string expected for type %s, got %s" % (type.signature, repr(value)))
        #end if
        if "\0" in value :
            raise MarshalError("string %s contains a NUL character" % repr(value))
        #end if
        if code == DBUS.TYPE_OBJECT_PATH :
            if not _is_valid_path(value) :
                raise MarshalError("invalid object path %s" % repr(value))
            #end if
            result = DBUS.ObjectPath(value)
        elif code == DBUS.TYPE_SIGNATURE :
            parse_signature(value)
            result = DBUS.Signature(value)
        else :
            result = str(value)
        #end if
    elif code == DBUS.TYPE_ARRAY :
        element = type.content
        if element.code == DBUS.TYPE_DICT_ENTRY :
            if not isinstance(value, dict) :
                raise MarshalError("dict expected for type %s, got %s" % (type.signature, repr(value)))
            #end if
            key_type, value_type = element.content
            result = dict \
              (
                (_convert(key_type, k), _convert(value_type, v))
                for k, v in value.items()
              )
        else :
            if element.code == DBUS.TYPE_BYTE and isinstance(value, (bytes, bytearray)) :
                value = list(value)
            #end if
            if not isinstance(value, (list, tuple)) :
                raise MarshalError("sequence expected for type %s, got %s" % (type.signature, repr(value)))
            #end if
            result = list(_convert(element, v) for v in value)
        #end if
    elif code == DBUS.TYPE_STRUCT :
        if not isinstance(value, (list, tuple)) or len(value) != len(type.content) :
            raise MarshalError \
              (
                "sequence of %d items expected for type %s, got %s"
              %
                (len(type.content), type.signature, repr(value))
              )
        #end if
        result = tuple(_convert(t, v) for t, v in zip(type.content, value))
    elif code == DBUS.TYPE_VARIANT :
        if isinstance(value, Argument) :
            result = value
        elif isinstance(value, (list, tuple)) and len(value) == 2 :
            result = Argument(value[0], value[1])
        else :
            raise MarshalError \
              (
                "Argument or (signature, value) pair expected for variant, got %s" % repr(value)
              )
        #end if
    else :
        raise MarshalError("unsupported type %s" % type.signature)
    #end if
    return \
        result
#end _convert

def _unwrap(type, value) :
    # returns value with all variants replaced by their contents.
    if "v" not in type.signature :
        result = value
    elif type.code == DBUS.TYPE_VARIANT :
        result = value.object
    elif type.is_dict :
        key_type, value_type = type.content.content
        result = dict((k, _unwrap(value_type, v)) for k, v in value.items())
    elif type.code == DBUS.TYPE_ARRAY :
        result = list(_unwrap(type.content, v) for v in value)
    else : # struct
        result = tuple(_unwrap(t, v) for t, v in zip(type.content, value))
    #end if
    return \
        result
#end _unwrap

class Argument :
    "a value tagged with its D-Bus type. type may be a Type or the signature of" \
    " a single complete type; value is checked and converted to the standard" \
    " Python representation for that type: int (UnixFD for “h”), bool, float," \
    " str (ObjectPath for “o”, Signature for “g”), list for arrays, dict for" \
    " arrays of dict entries, tuple for structs, and Argument for variants. A" \
    " variant may also be given as a (signature, value) pair."

    __slots__ = ("type", "value") # to forestall typos

    def __init__(self, type, value) :
        if not isinstance(type, Type) :
            type = parse_single_signature(type)
        #end if
        self.type = type
        self.value = _convert(type, value)
    #end __init__

    @classmethod
    def _from_wire(celf, type, value) :
        # wraps a value that the Unmarshaller has already put into standard form.
        result = celf.__new__(celf)
        result.type = type
        result.value = value
        return \
            result
    #end _from_wire

    @property
    def signature(self) :
        return \
            self.type.signature
    #end signature

    @property
    def object(self) :
        "the value as plain Python objects, with any variants unwrapped."
        return \
            _unwrap(self.type, self.value)
    #end object

    def __eq__(self, other) :
        return \
            isinstance(other, Argument) and other.type == self.type and other.value == self.value
    #end __eq__

    __hash__ = None

    def __repr__(self) :
        return \
            "%s(%s, %s)" % (self.__class__.__name__, repr(self.signature), repr(self.value))
    #end __repr__

#end Argument

#+
# Wire codec
#-

_fixed_formats = \
    { # struct module format code and size for each fixed-size type except boolean
        DBUS.TYPE_BYTE : ("B", 1),
        DBUS.TYPE_INT16 : ("h", 2),
        DBUS.TYPE_UINT16 : ("H", 2),
        DBUS.TYPE_INT32 : ("i", 4),
        DBUS.TYPE_UINT32 : ("I", 4),
        DBUS.TYPE_INT64 : ("q", 8),
        DBUS.TYPE_UINT64 : ("Q", 8),
        DBUS.TYPE_DOUBLE : ("d", 8),
        DBUS.TYPE_UNIX_FD : ("I", 4),
    }

def _struct_order(byteorder) :
    if byteorder == DBUS.LITTLE_ENDIAN :
        result = "<"
    elif byteorder == DBUS.BIG_ENDIAN :
        result = ">"
    else :
        raise ValueError("invalid byte order %s" % repr(byteorder))
    #end if
    return \
        result
#end _struct_order

class Marshaller :
    "accumulates the wire encoding of a sequence of values. byteorder is" \
    " DBUS.LITTLE_ENDIAN or DBUS.BIG_ENDIAN, defaulting to the native order." \
    " Alignment is reckoned from the start of the data, which must therefore" \
    " correspond to an 8-byte boundary in the message."

    __slots__ = ("byteorder", "_order", "_buf") # to forestall typos

    def __init__(self, byteorder = None) :
        if byteorder == None :
            byteorder = _native_byteorder
        #end if
        self._order = _struct_order(byteorder)
        self.byteorder = byteorder
        self._buf = bytearray()
    #end __init__

    def __len__(self) :
        return \
            len(self._buf)
    #end __len__

    @property
    def data(self) :
        "the bytes encoded so far."
        return \
            bytes(self._buf)
    #end data

    def align(self, alignment) :
        "pads with zero bytes to the specified alignment."
        self._buf.extend(b"\0" * (- len(self._buf) % alignment))
    #end align

    def _put(self, fmt, value) :
        try :
            self._buf.extend(struct.pack(self._order + fmt, value))
        except struct.error as fail :
            raise MarshalError("cannot encode %s: %s" % (repr(value), fail))
        #end try
    #end _put

    def _put_string(self, value, length_fmt) :
        if not isinstance(value, str) :
            raise MarshalError("string expected, got %s" % repr(value))
        #end if
        if "\0" in value :
            raise MarshalError("string %s contains a NUL character" % repr(value))
        #end if
        try :
            encoded = value.encode("utf-8")
        except UnicodeEncodeError as fail :
            raise MarshalError("cannot encode %s as UTF-8: %s" % (repr(value), fail))
        #end try
        self._put(length_fmt, len(encoded))
        self._buf.extend(encoded)
        self._buf.append(0)
    #end _put_string

    def append(self, type, value) :
        "appends the encoding of value, which must be of the specified Type." \
        " Values are expected in the forms that Argument produces."
        code = type.code
        if code in _fixed_formats :
            fmt, size = _fixed_formats[code]
            if code != DBUS.TYPE_DOUBLE and not isinstance(value, int) :
                raise MarshalError("integer expected for type %s, got %s" % (type.signature, repr(value)))
            #end if
            self.align(size)
            self._put(fmt, value)
        elif code == DBUS.TYPE_BOOLEAN :
            if value not in (0, 1) :
                raise MarshalError("boolean value expected, got %s" % repr(value))
            #end if
            self.align(4)
            self._put("I", int(value))
        elif code == DBUS.TYPE_STRING :
            self.align(4)
            self._put_string(value, "I")
        elif code == DBUS.TYPE_OBJECT_PATH :
            if not _is_valid_path(value) :
                raise MarshalError("invalid object path %s" % repr(value))
            #end if
            self.align(4)
            self._put_string(value, "I")
        elif code == DBUS.TYPE_SIGNATURE :
            parse_signature(value)
            self._put_string(value, "B")
        elif code == DBUS.TYPE_ARRAY :
            element = type.content
            self.align(4)
            length_pos = len(self._buf)
            self._put("I", 0) # patched below
            self.align(element.alignment)
            start = len(self._buf)
            if element.code == DBUS.TYPE_DICT_ENTRY :
                key_type, value_type = element.content
                for k, v in value.items() :
                    self.align(8)
                    self.append(key_type, k)
                    self.append(value_type, v)
                #end for
            else :
                for v in value :
                    self.append(element, v)
                #end for
            #end if
            length = len(self._buf) - start
            if length > DBUS.MAXIMUM_ARRAY_LENGTH :
                raise MarshalError \
                  (
                    "array of %d bytes exceeds maximum of %d" % (length, DBUS.MAXIMUM_ARRAY_LENGTH),
                    DBUS.ERROR_LIMITS_EXCEEDED
                  )
            #end if
            struct.pack_into(self._order + "I", self._buf, length_pos, length)
        elif code == DBUS.TYPE_STRUCT :
            if len(value) != len(type.content) :
                raise MarshalError("%d values for struct %s" % (len(value), type.signature))
            #end if
            self.align(8)
            for field_type, field in zip(type.content, value) :
                self.append(field_type, field)
            #end for
        elif code == DBUS.TYPE_VARIANT :
            if not isinstance(value, Argument) :
                value = Argument(value[0], value[1])
            #end if
            self.append(_SIGNATURE_TYPE, value.signature)
            self.append(value.type, value.value)
        else :
            raise MarshalError("unsupported type %s" % type.signature)
        #end if
        if len(self._buf) > DBUS.MAXIMUM_MESSAGE_LENGTH :
            raise MarshalError \
              (
                "encoded data exceeds maximum message length of %d" % DBUS.MAXIMUM_MESSAGE_LENGTH,
                DBUS.ERROR_LIMITS_EXCEEDED
              )
        #end if
    #end append

#end Marshaller

class Unmarshaller :
    "decodes values from D-Bus wire-format data. buf must begin at the start of" \
    " the message, since alignment is reckoned from there; decoding starts at" \
    " offset and may not go past end (defaulting to the end of buf)."

    __slots__ = ("byteorder", "_order", "_buf", "pos", "end") # to forestall typos

    def __init__(self, buf, byteorder, offset = 0, end = None) :
        try :
            self._order = _struct_order(byteorder)
        except ValueError :
            raise UnmarshalError("invalid byte order %s" % repr(byteorder))
        #end try
        self.byteorder = byteorder
        self._buf = bytes(buf)
        if end == None or end > len(self._buf) :
            end = len(self._buf)
        #end if
        self.pos = offset
        self.end = end
    #end __init__

    @property
    def remaining(self) :
        return \
            self.end - self.pos
    #end remaining

    def _take(self, nbytes) :
        if nbytes > self.end - self.pos :
            raise Truncated \
              (
                "need %d bytes at offset %d, only %d available" % (nbytes, self.pos, self.end - self.pos)
              )
        #end if
        result = self._buf[self.pos : self.pos + nbytes]
        self.pos += nbytes
        return \
            result
    #end _take

    def _get(self, fmt, size) :
        return \
            struct.unpack(self._order + fmt, self._take(size))[0]
    #end _get

    def align(self, alignment) :
        "skips padding to the specified alignment, which must be all zero bytes."
        padding = self._take(- self.pos % alignment)
        if padding.count(0) != len(padding) :
            raise UnmarshalError("non-zero alignment padding at offset %d" % (self.pos - len(padding)))
        #end if
    #end align

    def _get_string(self, length, code) :
        data = self._take(length + 1)
        if data[-1] != 0 :
            raise UnmarshalError("string at offset %d is not NUL-terminated" % (self.pos - length - 1))
        #end if
        data = data[:-1]
        if 0 in data :
            raise UnmarshalError("string at offset %d contains a NUL byte" % (self.pos - length - 1))
        #end if
        try :
            result = data.decode("utf-8")
        except UnicodeDecodeError as fail :
            raise UnmarshalError("invalid UTF-8 in string: %s" % fail)
        #end try
        if code == DBUS.TYPE_OBJECT_PATH :
            if not _is_valid_path(result) :
                raise UnmarshalError("invalid object path %s" % repr(result))
            #end if
            result = DBUS.ObjectPath(result)
        elif code == DBUS.TYPE_SIGNATURE :
            _parse_signature(result, UnmarshalError)
            result = DBUS.Signature(result)
        #end if
        return \
            result
    #end _get_string

    def next(self, type, depth = 0) :
        "decodes and returns the next value, which must be of the specified Type."
        if depth > DBUS.MAXIMUM_VALUE_NESTING_DEPTH :
            raise UnmarshalError("values nested more than %d deep" % DBUS.MAXIMUM_VALUE_NESTING_DEPTH)
        #end if
        code = type.code
        if code in _fixed_formats :
            fmt, size = _fixed_formats[code]
            self.align(size)
            result = self._get(fmt, size)
            if code == DBUS.TYPE_UNIX_FD :
                result = DBUS.UnixFD(result)
            #end if
        elif code == DBUS.TYPE_BOOLEAN :
            self.align(4)
            result = self._get("I", 4)
            if result not in (0, 1) :
                raise UnmarshalError("invalid boolean value %d" % result)
            #end if
            result = result != 0
        elif code in (DBUS.TYPE_STRING, DBUS.TYPE_OBJECT_PATH) :
            self.align(4)
            result = self._get_string(self._get("I", 4), code)
        elif code == DBUS.TYPE_SIGNATURE :
            result = self._get_string(self._get("B", 1), code)
        elif code == DBUS.TYPE_ARRAY :
            self.align(4)
            length = self._get("I", 4)
            if length > DBUS.MAXIMUM_ARRAY_LENGTH :
                raise UnmarshalError \
                  (
                    "array length %d exceeds maximum of %d" % (length, DBUS.MAXIMUM_ARRAY_LENGTH)
                  )
            #end if
            element = type.content
            self.align(element.alignment)
            if length > self.end - self.pos :
                raise Truncated \
                  (
                    "array of %d bytes at offset %d, only %d available"
                  %
                    (length, self.pos, self.end - self.pos)
                  )
            #end if
            stop = self.pos + length
            if element.code == DBUS.TYPE_DICT_ENTRY :
                key_type, value_type = element.content
                result = {}
                while self.pos < stop :
                    self.align(8)
                    key = self.next(key_type, depth + 1)
                    result[key] = self.next(value_type, depth + 1)
                #end while
            else :
                result = []
                while self.pos < stop :
                    result.append(self.next(element, depth + 1))
                #end while
            #end if
            if self.pos != stop :
                raise UnmarshalError("array contents overrun declared length %d" % length)
            #end if
        elif code == DBUS.TYPE_STRUCT :
            self.align(8)
            result = tuple(self.next(t, depth + 1) for t in type.content)
        elif code == DBUS.TYPE_VARIANT :
            signature = self.next(_SIGNATURE_TYPE, depth)
            types = _parse_signature(signature, UnmarshalError)
            if len(types) != 1 :
                raise UnmarshalError("variant signature %s is not a single type" % repr(signature))
            #end if
            result = Argument._from_wire(types[0], self.next(types[0], depth + 1))
        else :
            raise UnmarshalError("unsupported type %s" % type.signature)
        #end if
        return \
            result
    #end next

#end Unmarshaller

#+
# Messages
#-

def _checked_path(path) :
    validate_path(path)
    return \
        DBUS.ObjectPath(path)
#end _checked_path

def _checked_interface(name) :
    validate_interface(name)
    return \
        name
#end _checked_interface

def _checked_member(name) :
    validate_member(name)
    return \
        name
#end _checked_member

def _checked_error_name(name) :
    validate_error_name(name)
    return \
        name
#end _checked_error_name

def _checked_bus_name(name) :
    validate_bus_name(name)
    return \
        name
#end _checked_bus_name

def _checked_serial(serial) :
    if not isinstance(serial, int) or serial < 1 or serial > DBUS.MAXIMUM_SERIAL :
        raise ValueError("serial must be an integer in [1 .. %d]" % DBUS.MAXIMUM_SERIAL)
    #end if
    return \
        int(serial)
#end _checked_serial

def _header_field(code, check, doc) :
    # defines a property for getting and setting the header field with the given code.

    def get(self) :
        return \
            self._fields.get(code)
    #end get

    def set(self, value) :
        self._check_unlocked()
        if value == None :
            self._fields.pop(code, None)
        else :
            self._fields[code] = check(value)
        #end if
    #end set

#begin _header_field
    return \
        property(get, set, doc = doc)
#end _header_field

_required_fields = \
    { # header fields that must be present in each type of message
        DBUS.MESSAGE_TYPE_METHOD_CALL : (DBUS.HEADER_FIELD_PATH, DBUS.HEADER_FIELD_MEMBER),
        DBUS.MESSAGE_TYPE_METHOD_RETURN : (DBUS.HEADER_FIELD_REPLY_SERIAL,),
        DBUS.MESSAGE_TYPE_ERROR : (DBUS.HEADER_FIELD_ERROR_NAME, DBUS.HEADER_FIELD_REPLY_SERIAL),
        DBUS.MESSAGE_TYPE_SIGNAL :
            (DBUS.HEADER_FIELD_PATH, DBUS.HEADER_FIELD_INTERFACE, DBUS.HEADER_FIELD_MEMBER),
    }

_received_field_valid = \
    { # syntax checks on header fields of incoming messages
        DBUS.HEADER_FIELD_INTERFACE : _is_valid_interface,
        DBUS.HEADER_FIELD_MEMBER : _is_valid_member,
        DBUS.HEADER_FIELD_ERROR_NAME : _is_valid_interface,
        DBUS.HEADER_FIELD_REPLY_SERIAL : lambda serial : serial != 0,
        DBUS.HEADER_FIELD_DESTINATION : _is_valid_bus_name,
        DBUS.HEADER_FIELD_SENDER : _is_valid_bus_name,
    }

_message_type_names = \
    {
        DBUS.MESSAGE_TYPE_METHOD_CALL : "method_call",
        DBUS.MESSAGE_TYPE_METHOD_RETURN : "method_return",
        DBUS.MESSAGE_TYPE_ERROR : "error",
        DBUS.MESSAGE_TYPE_SIGNAL : "signal",
    }

class Message :
    "a D-Bus message. Do not instantiate directly; use one of the new_xxx or copy" \
    " methods, or Message.demarshal, or get one from Connection.pop_message. Once" \
    " a message has been sent or was received, it is locked, and any attempt to" \
    " change it raises MessageSealed."

    __slots__ = \
      (
        "_type",
        "_flags",
        "_serial",
        "_fields",
        "_arguments",
        "_signature",
        "_locked",
      ) # to forestall typos

    def __init__(self, type) :
        if not isinstance(type, int) or type < 1 or type > 255 :
            raise ValueError("invalid message type %s" % repr(type))
        #end if
        self._type = type
        self._flags = 0
        self._serial = 0
        self._fields = {}
        self._arguments = []
        self._signature = ""
        self._locked = False
    #end __init__

    @classmethod
    def new_method_call(celf, destination, path, iface, method) :
        "creates a new DBUS.MESSAGE_TYPE_METHOD_CALL message. All arguments are" \
        " required, and must follow the naming rules for their kind."
        validate_bus_name(destination)
        validate_path(path)
        validate_interface(iface)
        validate_member(method)
        result = celf(DBUS.MESSAGE_TYPE_METHOD_CALL)
        result._fields.update \
          (
            {
                DBUS.HEADER_FIELD_DESTINATION : destination,
                DBUS.HEADER_FIELD_PATH : DBUS.ObjectPath(path),
                DBUS.HEADER_FIELD_INTERFACE : iface,
                DBUS.HEADER_FIELD_MEMBER : method,
            }
          )
        return \
            result
    #end new_method_call

    @classmethod
    def new_signal(celf, path, iface, name) :
        "creates a new DBUS.MESSAGE_TYPE_SIGNAL message."
        validate_path(path)
        validate_interface(iface)
        validate_member(name)
        result = celf(DBUS.MESSAGE_TYPE_SIGNAL)
        result._fields.update \
          (
            {
                DBUS.HEADER_FIELD_PATH : DBUS.ObjectPath(path),
                DBUS.HEADER_FIELD_INTERFACE : iface,
                DBUS.HEADER_FIELD_MEMBER : name,
            }
          )
        return \
            result
    #end new_signal

    def _new_reply(self, type) :
        if self._type != DBUS.MESSAGE_TYPE_METHOD_CALL :
            raise TypeError("can only reply to a method call message")
        #end if
        if self._serial == 0 :
            raise ValueError("cannot reply to a message that has no serial")
        #end if
        result = self.__class__(type)
        result._fields[DBUS.HEADER_FIELD_REPLY_SERIAL] = self._serial
        sender = self._fields.get(DBUS.HEADER_FIELD_SENDER)
        if sender != None :
            result._fields[DBUS.HEADER_FIELD_DESTINATION] = sender
        #end if
        return \
            result
    #end _new_reply

    def new_method_return(self) :
        "creates a new DBUS.MESSAGE_TYPE_METHOD_RETURN that is a reply to this" \
        " method call."
        return \
            self._new_reply(DBUS.MESSAGE_TYPE_METHOD_RETURN)
    #end new_method_return

    def new_error(self, name, message = None) :
        "creates a new DBUS.MESSAGE_TYPE_ERROR message that is a reply to this" \
        " method call, with the specified error name and optional explanatory text."
        validate_error_name(name)
        result = self._new_reply(DBUS.MESSAGE_TYPE_ERROR)
        result._fields[DBUS.HEADER_FIELD_ERROR_NAME] = name
        if message != None :
            result.append_argument(Argument("s", message))
        #end if
        return \
            result
    #end new_error

    def copy(self) :
        "returns an unlocked copy of this Message, with the same serial."
        result = self.__class__(self._type)
        result._flags = self._flags
        result._serial = self._serial
        result._fields = dict(self._fields)
        result._arguments = list(self._arguments)
        result._signature = self._signature
        return \
            result
    #end copy

    @staticmethod
    def type_to_string(type) :
        "returns the protocol name for a message type, or “invalid”."
        return \
            _message_type_names.get(type, "invalid")
    #end type_to_string

    @staticmethod
    def type_from_string(type_str) :
        "returns the MESSAGE_TYPE for a protocol name, or MESSAGE_TYPE.INVALID."
        for code, name in _message_type_names.items() :
            if name == type_str :
                result = MESSAGE_TYPE(code)
                break
            #end if
        else :
            result = MESSAGE_TYPE.INVALID
        #end for
        return \
            result
    #end type_from_string

    def _check_unlocked(self) :
        if self._locked :
            raise MessageSealed()
        #end if
    #end _check_unlocked

    def lock(self) :
        "prevents further changes to this Message."
        self._locked = True
    #end lock

    @property
    def locked(self) :
        return \
            self._locked
    #end locked

    @property
    def type(self) :
        "the message type, as a MESSAGE_TYPE if it is one that is known."
        try :
            result = MESSAGE_TYPE(self._type)
        except ValueError :
            result = self._type
        #end try
        return \
            result
    #end type

    @property
    def flags(self) :
        return \
            self._flags
    #end flags

    def _set_flag(self, flag, on) :
        self._check_unlocked()
        if on :
            self._flags |= flag
        else :
            self._flags &= ~flag
        #end if
    #end _set_flag

    @property
    def no_reply(self) :
        "whether the sender does not want a reply to this method call."
        return \
            self._flags & DBUS.HEADER_FLAG_NO_REPLY_EXPECTED != 0
    #end no_reply

    @no_reply.setter
    def no_reply(self, no_reply) :
        self._set_flag(DBUS.HEADER_FLAG_NO_REPLY_EXPECTED, no_reply)
    #end no_reply

    @property
    def auto_start(self) :
        "whether the bus may launch the destination service to handle the message."
        return \
            self._flags & DBUS.HEADER_FLAG_NO_AUTO_START == 0
    #end auto_start

    @auto_start.setter
    def auto_start(self, auto_start) :
        self._set_flag(DBUS.HEADER_FLAG_NO_AUTO_START, not auto_start)
    #end auto_start

    @property
    def serial(self) :
        "the serial number assigned when the message was sent, or 0 if not yet sent."
        return \
            self._serial
    #end serial

    @serial.setter
    def serial(self, serial) :
        self._check_unlocked()
        self._serial = _checked_serial(serial)
    #end serial

    path = _header_field(DBUS.HEADER_FIELD_PATH, _checked_path, "the object path.")
    interface = _header_field(DBUS.HEADER_FIELD_INTERFACE, _checked_interface, "the interface name.")
    member = _header_field(DBUS.HEADER_FIELD_MEMBER, _checked_member, "the method or signal name.")
    error_name = _header_field(DBUS.HEADER_FIELD_ERROR_NAME, _checked_error_name, "the error name.")
    destination = _header_field \
      (
        DBUS.HEADER_FIELD_DESTINATION,
        _checked_bus_name,
        "the bus name of the intended recipient."
      )
    sender = _header_field \
      (
        DBUS.HEADER_FIELD_SENDER,
        _checked_bus_name,
        "the unique bus name of the sender, normally filled in by the bus daemon."
      )
    reply_serial = _header_field \
      (
        DBUS.HEADER_FIELD_REPLY_SERIAL,
        _checked_serial,
        "the serial of the message that this is a reply to."
      )

    @property
    def unix_fds(self) :
        "the number of file descriptors declared in the header."
        return \
            self._fields.get(DBUS.HEADER_FIELD_UNIX_FDS, 0)
    #end unix_fds

    @property
    def signature(self) :
        "the concatenated signatures of all the arguments."
        return \
            DBUS.Signature(self._signature)
    #end signature

    def has_path(self, path) :
        return \
            self._fields.get(DBUS.HEADER_FIELD_PATH) == path
    #end has_path

    def has_interface(self, iface) :
        return \
            self._fields.get(DBUS.HEADER_FIELD_INTERFACE) == iface
    #end has_interface

    def has_member(self, member) :
        return \
            self._fields.get(DBUS.HEADER_FIELD_MEMBER) == member
    #end has_member

    def has_destination(self, destination) :
        return \
            self._fields.get(DBUS.HEADER_FIELD_DESTINATION) == destination
    #end has_destination

    def has_sender(self, sender) :
        return \
            self._fields.get(DBUS.HEADER_FIELD_SENDER) == sender
    #end has_sender

    def is_method_call(self, iface, method) :
        return \
            (
                self._type == DBUS.MESSAGE_TYPE_METHOD_CALL
            and
                self.has_interface(iface)
            and
                self.has_member(method)
            )
    #end is_method_call

    def is_signal(self, iface, signal_name) :
        return \
            (
                self._type == DBUS.MESSAGE_TYPE_SIGNAL
            and
                self.has_interface(iface)
            and
                self.has_member(signal_name)
            )
    #end is_signal

    def is_error(self, error_name) :
        return \
            (
                self._type == DBUS.MESSAGE_TYPE_ERROR
            and
                self._fields.get(DBUS.HEADER_FIELD_ERROR_NAME) == error_name
            )
    #end is_error

    @property
    def expects_reply(self) :
        "is this a method call that will be answered by a reply."
        return \
            self._type == DBUS.MESSAGE_TYPE_METHOD_CALL and not self.no_reply
    #end expects_reply

    def append_argument(self, argument) :
        "appends an Argument to the message body."
        self._check_unlocked()
        if not isinstance(argument, Argument) :
            raise TypeError("argument must be an Argument")
        #end if
        signature = self._signature + argument.signature
        if len(signature) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
            raise MarshalError \
              (
                "message signature would exceed %d bytes" % DBUS.MAXIMUM_SIGNATURE_LENGTH,
                DBUS.ERROR_LIMITS_EXCEEDED
              )
        #end if
        self._arguments.append(argument)
        self._signature = signature
    #end append_argument

    def append_objects(self, signature, *args) :
        "interprets Python values args according to signature and appends" \
        " them to the message. Nothing is appended if any value is unsuitable."
        types = parse_signature(signature)
        if len(args) != len(types) :
            raise ValueError \
              (
                "signature %s needs %d values, got %d" % (repr(signature), len(types), len(args))
              )
        #end if
        arguments = list(Argument(t, v) for t, v in zip(types, args))
        for argument in arguments :
            self.append_argument(argument)
        #end for
    #end append_objects

    @property
    def arguments(self) :
        "the list of Argument objects making up the body."
        return \
            list(self._arguments)
    #end arguments

    @property
    def objects(self) :
        "the body arguments as plain Python values, with variants unwrapped."
        return \
            list(arg.object for arg in self._arguments)
    #end objects

    def expect_objects(self, signature) :
        "returns the body arguments as Python values after checking that the" \
        " message signature is the one expected."
        if self._signature != signature :
            raise TypeError \
              (
                "message arguments have signature %s, not %s"
              %
                (repr(self._signature), repr(signature))
              )
        #end if
        return \
            self.objects
    #end expect_objects

    def expect_return_objects(self, signature) :
        "for a reply message: raises the propagated error if it is an error reply," \
        " otherwise returns the arguments as per expect_objects."
        if self._type == DBUS.MESSAGE_TYPE_ERROR :
            raise DBusError.from_message(self)
        #end if
        if self._type != DBUS.MESSAGE_TYPE_METHOD_RETURN :
            raise TypeError("message is not a method reply")
        #end if
        return \
            self.expect_objects(signature)
    #end expect_return_objects

    def _seal(self, serial) :
        # assigns the serial and locks the message, as part of sending it.
        self._serial = serial
        self._locked = True
    #end _seal

    def _check_required(self, fail) :
        for code in _required_fields.get(self._type, ()) :
            if code not in self._fields :
                raise fail \
                  (
                    "%s message lacks required header field %d"
                  %
                    (self.type_to_string(self._type), code)
                  )
            #end if
        #end for
    #end _check_required

    def marshal(self, byteorder = None, serial = None) :
        "returns the complete wire encoding of this message. serial, if specified," \
        " overrides the serial recorded in the message."
        if serial == None :
            serial = self._serial
        #end if
        if serial == 0 :
            raise MarshalError("message has no serial number")
        #end if
        self._check_required(MarshalError)
        body = Marshaller(byteorder)
        for arg in self._arguments :
            body.append(arg.type, arg.value)
        #end for
        fields = list \
          (
            (code, Argument(DBUS.header_field_signatures[code], self._fields[code]))
            for code in sorted(self._fields)
          )
        if self._signature != "" :
            fields.append \
              (
                (DBUS.HEADER_FIELD_SIGNATURE, Argument("g", self._signature))
              )
        #end if
        header = Marshaller(body.byteorder)
        for field_type, value in zip \
          (
            _HEADER_TYPES,
            (
                ord(body.byteorder),
                self._type,
                self._flags,
                DBUS.MAJOR_PROTOCOL_VERSION,
                len(body),
                serial,
                fields,
            )
          ) :
            header.append(field_type, value)
        #end for
        header.align(8)
        if len(header) + len(body) > DBUS.MAXIMUM_MESSAGE_LENGTH :
            raise MarshalError \
              (
                "message of %d bytes exceeds maximum of %d"
              %
                (len(header) + len(body), DBUS.MAXIMUM_MESSAGE_LENGTH),
                DBUS.ERROR_LIMITS_EXCEEDED
              )
        #end if
        return \
            header.data + body.data
    #end marshal

    @staticmethod
    def demarshal_bytes_needed(buf) :
        "returns the total length of the message starting at the beginning of buf," \
        " or 0 if buf does not yet hold enough to tell."
        if len(buf) < DBUS.MINIMUM_HEADER_SIZE :
            result = 0
        else :
            try :
                order = _struct_order(chr(buf[0]))
            except ValueError :
                raise UnmarshalError("invalid byte order %s" % repr(chr(buf[0])))
            #end try
            body_length, = struct.unpack(order + "I", bytes(buf[4:8]))
            fields_length, = struct.unpack(order + "I", bytes(buf[12:16]))
            header_length = DBUS.MINIMUM_HEADER_SIZE + fields_length
            header_length += - header_length % 8
            result = header_length + body_length
        #end if
        return \
            result
    #end demarshal_bytes_needed

    @classmethod
    def demarshal(celf, buf, error = None) :
        "decodes a complete message from buf, which must hold exactly one message." \
        " The result is locked."
        error, my_error = _get_error(error)
        try :
            result = celf._demarshal(bytes(buf))
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end demarshal

    @classmethod
    def _demarshal(celf, buf) :
        if len(buf) < DBUS.MINIMUM_HEADER_SIZE :
            raise Truncated("%d bytes is too short for a message header" % len(buf))
        #end if
        needed = celf.demarshal_bytes_needed(buf)
        if needed > DBUS.MAXIMUM_MESSAGE_LENGTH :
            raise UnmarshalError \
              (
                "message length %d exceeds maximum of %d" % (needed, DBUS.MAXIMUM_MESSAGE_LENGTH)
              )
        #end if
        if len(buf) < needed :
            raise Truncated("message needs %d bytes, only %d available" % (needed, len(buf)))
        elif len(buf) > needed :
            raise UnmarshalError("%d extra bytes after end of message" % (len(buf) - needed))
        #end if
        byteorder = chr(buf[0])
        header = Unmarshaller(buf, byteorder)
        _, type, flags, version, body_length, serial, fields = \
            list(header.next(t) for t in _HEADER_TYPES)
        if version != DBUS.MAJOR_PROTOCOL_VERSION :
            raise UnmarshalError("unsupported protocol version %d" % version)
        #end if
        if type == DBUS.MESSAGE_TYPE_INVALID :
            raise UnmarshalError("invalid message type 0")
        #end if
        if serial == 0 :
            raise UnmarshalError("message has zero serial")
        #end if
        result = celf(type)
        result._flags = flags
        result._serial = serial
        signature = ""
        seen = set()
        for code, value in fields :
            if code in seen :
                raise UnmarshalError("duplicate header field %d" % code)
            #end if
            seen.add(code)
            expected = DBUS.header_field_signatures.get(code)
            if expected == None :
                continue # unknown fields must be ignored
            #end if
            if value.signature != expected :
                raise UnmarshalError \
                  (
                    "header field %d has type %s, not %s" % (code, value.signature, expected)
                  )
            #end if
            valid = _received_field_valid.get(code)
            if valid != None and not valid(value.value) :
                raise UnmarshalError("invalid value %s for header field %d" % (repr(value.value), code))
            #end if
            if code == DBUS.HEADER_FIELD_SIGNATURE :
                signature = value.value
            else :
                result._fields[code] = value.value
            #end if
        #end for
        result._check_required(UnmarshalError)
        header.align(8)
        body = Unmarshaller(buf, byteorder, header.pos, header.pos + body_length)
        for arg_type in _parse_signature(signature, UnmarshalError) :
            result._arguments.append(Argument._from_wire(arg_type, body.next(arg_type)))
        #end for
        if body.remaining != 0 :
            raise UnmarshalError \
              (
                "%d bytes left over after arguments with signature %s"
              %
                (body.remaining, repr(signature))
              )
        #end if
        result._signature = signature
        result._locked = True
        return \
            result
    #end _demarshal

    def __repr__(self) :
        return \
            (
                "<%s %s serial=%d%s>"
            %
                (
                    self.__class__.__name__,
                    self.type_to_string(self._type),
                    self._serial,
                    "".join
                      (
                        " %s=%s" % (name, repr(self._fields[code]))
                        for code, name in
                            (
                                (DBUS.HEADER_FIELD_PATH, "path"),
                                (DBUS.HEADER_FIELD_INTERFACE, "interface"),
                                (DBUS.HEADER_FIELD_MEMBER, "member"),
                                (DBUS.HEADER_FIELD_ERROR_NAME, "error_name"),
                                (DBUS.HEADER_FIELD_REPLY_SERIAL, "reply_serial"),
                                (DBUS.HEADER_FIELD_DESTINATION, "destination"),
                                (DBUS.HEADER_FIELD_SENDER, "sender"),
                            )
                        if code in self._fields
                      ),
                )
            )
    #end __repr__

#end Message

#+
# Serial numbers
#-

class SerialAllocator :
    "issues message serial numbers: 32-bit unsigned values counting up from 1," \
    " wrapping round from 0xFFFFFFFF back to 1, and never 0. Safe for use from" \
    " multiple threads."

    __slots__ = ("_lock", "_next") # to forestall typos

    def __init__(self, first = 1) :
        self._lock = threading.Lock()
        self._next = _checked_serial(first)
    #end __init__

    def next(self, in_use = ()) :
        "returns the next serial number that is not in in_use."
        with self._lock :
            while True :
                result = self._next
                self._next = result % DBUS.MAXIMUM_SERIAL + 1
                if result not in in_use :
                    break
            #end while
        #end with
        return \
            result
    #end next

#end SerialAllocator

#+
# Server addresses
#-

_address_unescaped = frozenset \
    (
        b"-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_/.\\*"
    )
_hex_digits = frozenset(b"0123456789ABCDEFabcdef")

def address_escape_value(value) :
    "escapes a value for inclusion in a D-Bus server address string."
    return \
        "".join \
          (
            (lambda : "%%%02x" % c, lambda : chr(c))[c in _address_unescaped]()
            for c in value.encode("utf-8")
          )
#end address_escape_value

def address_unescape_value(value, error = None) :
    "undoes the %-escaping of a value from a D-Bus server address string."
    error, my_error = _get_error(error)
    try :
        raw = value.encode("utf-8")
        unescaped = bytearray()
        pos = 0
        while pos < len(raw) :
            c = raw[pos]
            if c == ord("%") :
                digits = raw[pos + 1 : pos + 3]
                if len(digits) != 2 or not all(d in _hex_digits for d in digits) :
                    raise ConnectError \
                      (
                        "invalid escape sequence in address value %s" % repr(value),
                        DBUS.ERROR_BAD_ADDRESS
                      )
                #end if
                unescaped.append(int(digits, 16))
                pos += 3
            elif c in _address_unescaped :
                unescaped.append(c)
                pos += 1
            else :
                raise ConnectError \
                  (
                    "character %s must be escaped in address value %s" % (repr(chr(c)), repr(value)),
                    DBUS.ERROR_BAD_ADDRESS
                  )
            #end if
        #end while
        try :
            result = unescaped.decode("utf-8")
        except UnicodeDecodeError :
            raise ConnectError \
              (
                "address value %s is not valid UTF-8" % repr(value),
                DBUS.ERROR_BAD_ADDRESS
              )
        #end try
    except DBusError as fail :
        error.set_from_exception(fail)
        result = None
    #end try
    my_error.raise_if_set()
    return \
        result
#end address_unescape_value

class AddressEntries :
    "the parsed form of a D-Bus server address string: transport entries separated" \
    " by semicolons, each of the form “transport:key=value,...”. Do not instantiate" \
    " directly; get from AddressEntries.parse. Behaves as a read-only sequence of" \
    " AddressEntries.Entry objects."

    __slots__ = ("_entries",) # to forestall typos

    class Entry :
        "a single entry from a server address. method is the transport name; the" \
        " unescaped values are accessible via get_value or subscripting, giving" \
        " None for keys that are not present."

        __slots__ = ("method", "_values") # to forestall typos

        def __init__(self, method, values) :
            self.method = method
            self._values = values
        #end __init__

        def get_value(self, key) :
            return \
                self._values.get(key)
        #end get_value
        __getitem__ = get_value

        @property
        def keys(self) :
            return \
                list(self._values.keys())
        #end keys

        def __str__(self) :
            return \
                (
                    "%s:%s"
                %
                    (
                        self.method,
                        ",".join
                          (
                            "%s=%s" % (key, address_escape_value(value))
                            for key, value in self._values.items()
                          ),
                    )
                )
        #end __str__

        def __repr__(self) :
            return \
                "<%s %s>" % (self.__class__.__name__, str(self))
        #end __repr__

    #end Entry

    def __init__(self, entries) :
        self._entries = tuple(entries)
    #end __init__

    @classmethod
    def parse(celf, address, error = None) :
        "parses a server address string into an AddressEntries object."
        if not isinstance(address, str) :
            raise TypeError("address must be a string")
        #end if
        error, my_error = _get_error(error)
        try :
            entries = []
            for item in address.split(";") :
                if item == "" :
                    continue
                #end if
                method, colon, rest = item.partition(":")
                if colon == "" or method == "" :
                    raise ConnectError \
                      (
                        "address entry %s has no transport name" % repr(item),
                        DBUS.ERROR_BAD_ADDRESS
                      )
                #end if
                values = {}
                if rest != "" :
                    for pair in rest.split(",") :
                        key, equals, value = pair.partition("=")
                        if equals == "" or key == "" :
                            raise ConnectError \
                              (
                                "invalid key=value pair %s in address" % repr(pair),
                                DBUS.ERROR_BAD_ADDRESS
                              )
                        #end if
                        if key in values :
                            raise ConnectError \
                              (
                                "duplicate key %s in address entry" % repr(key),
                                DBUS.ERROR_BAD_ADDRESS
                              )
                        #end if
                        values[key] = address_unescape_value(value)
                    #end for
                #end if
                entries.append(celf.Entry(method, values))
            #end for
            result = celf(entries)
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end parse

    def __len__(self) :
        return \
            len(self._entries)
    #end __len__

    def __getitem__(self, i) :
        return \
            self._entries[i]
    #end __getitem__

    def __iter__(self) :
        return \
            iter(self._entries)
    #end __iter__

#end AddressEntries

def bus_address(type) :
    "returns the server address for one of the well-known buses, a BUS_TYPE value," \
    " as configured in the environment."
    type = BUS_TYPE(type)
    if type == BUS_TYPE.SESSION :
        address = os.environ.get("DBUS_SESSION_BUS_ADDRESS")
        if address == None :
            runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
            if runtime_dir != None and os.path.exists(os.path.join(runtime_dir, "bus")) :
                address = "unix:path=%s" % address_escape_value(os.path.join(runtime_dir, "bus"))
            #end if
        #end if
        if address == None :
            raise ConnectError \
              (
                "cannot find session bus: DBUS_SESSION_BUS_ADDRESS is not set",
                DBUS.ERROR_BAD_ADDRESS
              )
        #end if
    elif type == BUS_TYPE.SYSTEM :
        address = os.environ.get("DBUS_SYSTEM_BUS_ADDRESS", DBUS.SYSTEM_BUS_DEFAULT_ADDRESS)
    else : # BUS_TYPE.STARTER
        address = os.environ.get("DBUS_STARTER_ADDRESS")
        if address == None :
            starter_type = os.environ.get("DBUS_STARTER_BUS_TYPE")
            if starter_type == "session" :
                address = bus_address(BUS_TYPE.SESSION)
            elif starter_type == "system" :
                address = bus_address(BUS_TYPE.SYSTEM)
            else :
                raise ConnectError \
                  (
                    "cannot find starter bus: neither DBUS_STARTER_ADDRESS nor"
                    " a valid DBUS_STARTER_BUS_TYPE is set",
                    DBUS.ERROR_BAD_ADDRESS
                  )
            #end if
        #end if
    #end if
    return \
        address
#end bus_address

#+
# Transport and authentication
#-

_MAX_AUTH_LINE = 16384

def _connect_socket(entry, timeout) :
    # opens a socket to the server described by a single AddressEntries.Entry.
    if entry.method == "unix" :
        path = entry["path"]
        abstract = entry["abstract"]
        if (path == None) == (abstract == None) :
            raise ConnectError \
              (
                "unix address %s needs exactly one of path or abstract" % entry,
                DBUS.ERROR_BAD_ADDRESS
              )
        #end if
        if path != None :
            sockaddrs = [(socket.AF_UNIX, path)]
        else :
            sockaddrs = [(socket.AF_UNIX, b"\0" + abstract.encode("utf-8"))]
        #end if
    elif entry.method == "tcp" :
        host = entry["host"]
        if host == None :
            host = "localhost"
        #end if
        families = {None : socket.AF_UNSPEC, "ipv4" : socket.AF_INET, "ipv6" : socket.AF_INET6}
        if entry["family"] not in families :
            raise ConnectError \
              (
                "unknown address family %s in %s" % (repr(entry["family"]), entry),
                DBUS.ERROR_BAD_ADDRESS
              )
        #end if
        try :
            port = int(entry["port"])
        except (TypeError, ValueError) :
            raise ConnectError("tcp address %s needs a numeric port" % entry, DBUS.ERROR_BAD_ADDRESS)
        #end try
        try :
            sockaddrs = list \
              (
                (info[0], info[4])
                for info in socket.getaddrinfo
                  (
                    host, port, families[entry["family"]], socket.SOCK_STREAM
                  )
              )
        except OSError as fail :
            raise ConnectError("cannot resolve host %s: %s" % (repr(host), fail))
        #end try
    else :
        raise UnsupportedTransport \
          (
            "unsupported transport %s in address %s" % (repr(entry.method), entry)
          )
    #end if
    sock = None
    fail = None
    for family, sockaddr in sockaddrs :
        try :
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError as this_fail :
            fail = this_fail
            continue # family not supported here, perhaps
        #end try
        try :
            sock.settimeout(timeout)
            sock.connect(sockaddr)
            if family != socket.AF_UNIX :
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            #end if
        except OSError as this_fail :
            sock.close()
            sock = None
            fail = this_fail
        else :
            break
        #end try
    #end for
    if sock == None :
        raise ConnectError("cannot connect to %s: %s" % (entry, fail))
    #end if
    return \
        sock
#end _connect_socket

def _auth_read_line(sock, buf) :
    # reads the next line of the authentication conversation, returning
    # it along with anything that was received after it.
    while b"\r\n" not in buf :
        if len(buf) > _MAX_AUTH_LINE :
            raise ConnectError("authentication line too long", DBUS.ERROR_AUTH_FAILED)
        #end if
        data = sock.recv(4096)
        if len(data) == 0 :
            raise ConnectError("connection closed during authentication", DBUS.ERROR_AUTH_FAILED)
        #end if
        buf += data
    #end while
    line, _, rest = buf.partition(b"\r\n")
    return \
        line, rest
#end _auth_read_line

def _authenticate(sock) :
    # performs the EXTERNAL authentication exchange on a newly-connected
    # socket, returning the server GUID and any bytes received after the
    # end of the exchange.
    try :
        sock.sendall(b"\0")
        sock.sendall(b"AUTH EXTERNAL %s\r\n" % str(os.getuid()).encode().hex().encode())
        line, rest = _auth_read_line(sock, b"")
        words = line.split()
        if len(words) == 2 and words[0] == b"OK" :
            server_id = words[1].decode("ascii", "replace")
        elif len(words) != 0 and words[0] == b"REJECTED" :
            raise ConnectError \
              (
                    "EXTERNAL authentication rejected; server offers: %s"
                %
                    b" ".join(words[1:]).decode("ascii", "replace"),
                DBUS.ERROR_AUTH_FAILED
              )
        else :
            raise ConnectError \
              (
                "unexpected authentication response %s" % repr(line),
                DBUS.ERROR_AUTH_FAILED
              )
        #end if
        sock.sendall(b"BEGIN\r\n")
    except socket.timeout :
        raise ConnectError("timed out during authentication", DBUS.ERROR_TIMEOUT)
    except OSError as fail :
        raise ConnectError("I/O error during authentication: %s" % fail, DBUS.ERROR_IO_ERROR)
    #end try
    return \
        server_id, rest
#end _authenticate

def _set_future_result(future, result) :
    if not future.done() :
        future.set_result(result)
    #end if
#end _set_future_result

def _set_future_exception(future, exception) :
    if not future.done() :
        future.set_exception(exception)
    #end if
#end _set_future_exception

def _reply_code(enum_class, code, method) :
    # converts a numeric reply code from the bus daemon to the corresponding enum value.
    try :
        result = enum_class(code)
    except ValueError :
        raise UnmarshalError("unexpected %s reply code %d" % (method, code))
    #end try
    return \
        result
#end _reply_code

#+
# Connections
#-

class Connection :
    "a connection to a D-Bus bus daemon or peer. Do not instantiate directly; use" \
    " the open, open_private or bus_get methods. Shared (non-private) connections" \
    " are reused for the same address or bus type for as long as they stay open."

    __slots__ = \
      (
        "__weakref__",
        "_sock",
        "_fileno",
        "_address",
        "_state",
        "_server_id",
        "_unique_name",
        "_serials",
        "_send_lock",
        "_inbound_cond",
        "_reading",
        "_inbound",
        "_inbuf",
        "_outbound",
        "_out_offset",
        "_writing",
        "_awaiting",
        "_reply_futures",
        "_dispatch_status",
        "loop",
      ) # to forestall typos

    _shared = WeakValueDictionary()
    _shared_lock = threading.Lock()

    def __init__(self, sock, address) :
        self._sock = sock
        self._fileno = sock.fileno()
        self._address = address
        self._state = CONNECTION_STATE.OPEN
        self._server_id = None
        self._unique_name = None
        self._serials = SerialAllocator()
        self._send_lock = threading.RLock()
          # covers serial allocation, output queue and socket writes; reentrant
          # because loss of the connection can be noticed while writing
        self._inbound_cond = threading.Condition()
          # covers incoming queue, _reading, _awaiting and _reply_futures
        self._reading = False # whether some thread has taken on the job of reading the socket
        self._inbound = collections.deque()
        self._inbuf = bytearray()
        self._outbound = collections.deque() # sequence of (serial, data) pairs
        self._out_offset = 0 # how much of first item in _outbound has been written
        self._writing = False # whether the event loop is watching for writability
        self._awaiting = set() # serials of sent method calls still expecting replies
        self._reply_futures = {} # serial => future for send_await_reply
        self._dispatch_status = None
        self.loop = None
    #end __init__

    def __del__(self) :
        sock = getattr(self, "_sock", None)
        if sock != None :
            sock.close()
        #end if
    #end __del__

    @classmethod
    def _open(celf, address, private, key, timeout) :
        result = None
        if not private :
            with celf._shared_lock :
                result = celf._shared.get(key)
            #end with
            if result != None and not result.is_connected :
                result = None
            #end if
        #end if
        if result == None :
            entries = AddressEntries.parse(address)
            if len(entries) == 0 :
                raise ConnectError("no entries in address %s" % repr(address), DBUS.ERROR_BAD_ADDRESS)
            #end if
            timeout = _get_timeout(timeout)
            sock = None
            last_fail = None
            for entry in entries :
                try :
                    sock = _connect_socket(entry, timeout)
                except ConnectError as fail :
                    _logger.debug("cannot use address entry %s: %s", entry, fail)
                    last_fail = fail
                else :
                    break
                #end try
            #end for
            if sock == None :
                raise last_fail
            #end if
            result = celf(sock, address)
            try :
                server_id, leftover = _authenticate(sock)
            except ConnectError :
                result.close()
                raise
            #end try
            sock.settimeout(None)
            _logger.debug("authenticated to %s, server id %s", entry, server_id)
            result._server_id = server_id
            result._inbuf.extend(leftover)
            result._state = CONNECTION_STATE.AUTHENTICATED
            if not private :
                with celf._shared_lock :
                    celf._shared[key] = result
                #end with
            #end if
        #end if
        return \
            result
    #end _open

    @classmethod
    def open(celf, address, private, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "opens a Connection to the server at the specified address; several" \
        " entries separated by semicolons are tried in turn. Returns the Connection" \
        " once authentication has succeeded. This does not register with a bus" \
        " daemon; call bus_register for that."
        error, my_error = _get_error(error)
        try :
            result = celf._open(address, private, address, timeout)
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end open

    @classmethod
    def open_private(celf, address, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "opens a new, unshared Connection to the server at the specified address."
        return \
            celf.open(address, True, error, timeout)
    #end open_private

    @classmethod
    def bus_get(celf, type, private, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "returns a Connection to one of the well-known buses, a BUS_TYPE value, already" \
        " registered with the bus daemon."
        type = BUS_TYPE(type)
        error, my_error = _get_error(error)
        try :
            result = celf._open(bus_address(type), private, type, timeout)
            if result._unique_name == None :
                try :
                    result.bus_register(timeout = timeout)
                except DBusError as fail :
                    result.close()
                    raise ConnectError("cannot register with bus: %s" % fail.message, fail.name)
                #end try
            #end if
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end bus_get
    get = bus_get

    @property
    def state(self) :
        "the CONNECTION_STATE."
        return \
            self._state
    #end state

    @property
    def is_connected(self) :
        return \
            self._state != CONNECTION_STATE.CLOSED
    #end is_connected

    @property
    def is_authenticated(self) :
        return \
            self._state == CONNECTION_STATE.AUTHENTICATED
    #end is_authenticated

    @property
    def server_id(self) :
        "the GUID the server gave during authentication."
        return \
            self._server_id
    #end server_id

    @property
    def address(self) :
        return \
            self._address
    #end address

    @property
    def bus_unique_name(self) :
        "the unique name assigned by the bus daemon, or None if not registered."
        return \
            self._unique_name
    #end bus_unique_name

    def fileno(self) :
        "the socket file descriptor, for use with select and the like."
        return \
            self._fileno
    #end fileno

    def _check_open(self) :
        if self._state == CONNECTION_STATE.CLOSED :
            raise NotConnected()
        #end if
    #end _check_open

    def _in_loop(self, func, *args) :
        # invokes func(*args) in the event-loop thread: directly if this is that
        # thread, else via call_soon_threadsafe. Returns False if the loop has
        # been closed, in which case nothing is done.
        loop = self.loop
        if loop.is_closed() :
            return \
                False
        #end if
        try :
            running = asyncio.get_running_loop()
        except RuntimeError :
            running = None
        #end try
        if running is loop :
            func(*args)
        else :
            try :
                loop.call_soon_threadsafe(func, *args)
            except RuntimeError :
                return \
                    False # closed in the meantime
            #end try
        #end if
        return \
            True
    #end _in_loop

    def _release_socket(self, sock) :
        # runs in the event-loop thread: stops watching the socket before
        # closing it, so its descriptor cannot be reused while still watched.
        self.loop.remove_reader(self._fileno)
        self.loop.remove_writer(self._fileno)
        sock.close()
    #end _release_socket

    def _shut_down(self, discard) :
        # common routine for close and loss of connection. Messages already
        # received stay available to pop_message unless discard.
        with self._inbound_cond :
            sock = self._sock
            self._sock = None
            self._state = CONNECTION_STATE.CLOSED
            futures = list(self._reply_futures.values())
            self._reply_futures.clear()
            self._awaiting.clear()
            if discard :
                self._inbound.clear()
            #end if
            self._inbound_cond.notify_all()
        #end with
        if sock != None :
            try :
                sock.shutdown(socket.SHUT_RDWR)
            except OSError :
                pass # other end already gone
            #end try
        #end if
        # shutdown has woken any thread blocked writing, so the send lock can be had
        with self._send_lock :
            self._outbound.clear()
            self._out_offset = 0
            self._writing = False
        #end with
        if sock != None :
            if self.loop == None or not self._in_loop(self._release_socket, sock) :
                sock.close()
            #end if
        #end if
        for future in futures :
            self._in_loop \
              (
                _set_future_exception,
                future,
                NotConnected("connection closed while awaiting reply")
              )
        #end for
    #end _shut_down

    def _disconnected(self, reason) :
        _logger.debug("lost connection to %s: %s", self._address, reason)
        self._shut_down(False)
    #end _disconnected

    def close(self) :
        "closes the connection and releases the socket. Further attempts to use" \
        " the connection fail with NotConnected. Calling this more than once is" \
        " harmless."
        if self._state != CONNECTION_STATE.CLOSED :
            _logger.debug("closing connection to %s", self._address)
            self._shut_down(True)
        #end if
    #end close

    def _lost_output(self, serial) :
        # drops the message at the head of the output queue after a failed write.
        # If part of it has already gone out, the stream can no longer be used.
        if self._out_offset == 0 :
            self._outbound.popleft()
            with self._inbound_cond :
                self._awaiting.discard(serial)
            #end with
        else :
            self._disconnected("message %d only partly written" % serial)
        #end if
    #end _lost_output

    def _write_outbound(self, block) :
        # writes queued output, stopping when the socket would block unless block.
        # Caller must hold the send lock.
        while len(self._outbound) != 0 :
            sock = self._sock
            if sock == None :
                raise NotConnected()
            #end if
            serial, data = self._outbound[0]
            chunk = memoryview(data)[self._out_offset:]
            try :
                if block :
                    sock.sendall(chunk)
                    sent = len(chunk)
                else :
                    sent = sock.send(chunk, socket.MSG_DONTWAIT)
                #end if
            except BlockingIOError :
                break
            except MemoryError :
                self._lost_output(serial)
                raise OutOfMemory("out of memory writing message %d" % serial)
            except OSError as fail :
                if fail.errno in (errno.ENOMEM, errno.ENOBUFS) :
                    self._lost_output(serial)
                    raise OutOfMemory \
                      (
                        "transport out of memory writing message %d: %s" % (serial, fail.strerror)
                      )
                #end if
                self._disconnected("write failed: %s" % fail)
                raise NotConnected("connection lost: %s" % fail)
            #end try
            self._out_offset += sent
            if self._out_offset == len(data) :
                self._outbound.popleft()
                self._out_offset = 0
            #end if
        #end while
    #end _write_outbound

    def _watch_output(self) :
        # if attached to an event loop and output remains queued, gets the loop
        # to finish writing it. Caller must hold the send lock.
        if self.loop != None and not self._writing and len(self._outbound) != 0 :
            self._writing = True
            if not self._in_loop(self._add_writer) :
                self._writing = False
            #end if
        #end if
    #end _watch_output

    def _add_writer(self) :
        with self._send_lock :
            if self._writing and self._sock != None :
                self.loop.add_writer(self._fileno, self._handle_writable)
            #end if
        #end with
    #end _add_writer

    def _handle_writable(self) :
        # called by the event loop when the socket can take more output.
        with self._send_lock :
            if self._sock != None :
                try :
                    self._write_outbound(False)
                except DBusError as fail :
                    _logger.warning("error writing to %s: %s", self._address, fail)
                #end try
            #end if
            if self._sock != None and len(self._outbound) == 0 :
                self._writing = False
                self.loop.remove_writer(self._fileno)
            #end if
        #end with
    #end _handle_writable

    def send(self, message) :
        "sends a Message, returning the serial number assigned to it. The message is" \
        " locked against further changes. Output that cannot be written immediately" \
        " stays queued; call flush to wait until it has gone. If the Connection is" \
        " attached to an event loop, the loop writes queued output as the socket allows."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        if message.locked :
            raise MessageSealed("message has already been sent")
        #end if
        if "h" in message.signature :
            raise SendError \
              (
                "cannot pass unix file descriptors on this connection",
                DBUS.ERROR_NOT_SUPPORTED
              )
        #end if
        with self._send_lock :
            self._check_open()
            serial = self._serials.next(self._awaiting)
            data = message.marshal(serial = serial)
            message._seal(serial)
            if message.expects_reply :
                with self._inbound_cond :
                    self._awaiting.add(serial)
                #end with
            #end if
            self._outbound.append((serial, data))
            try :
                self._write_outbound(False)
            finally :
                self._watch_output()
            #end try
        #end with
        _logger.debug("sent %r", message)
        return \
            serial
    #end send

    def flush(self) :
        "blocks until all queued output has been written."
        with self._send_lock :
            self._check_open()
            self._write_outbound(True)
        #end with
    #end flush

    def _parse_inbuf(self) :
        # moves any complete messages in the input buffer to the incoming
        # queue, returning how many there were.
        count = 0
        while True :
            try :
                needed = Message.demarshal_bytes_needed(self._inbuf)
                if needed > DBUS.MAXIMUM_MESSAGE_LENGTH :
                    raise UnmarshalError \
                      (
                        "incoming message length %d exceeds maximum of %d"
                      %
                        (needed, DBUS.MAXIMUM_MESSAGE_LENGTH)
                      )
                #end if
                if needed == 0 or len(self._inbuf) < needed :
                    break
                #end if
                message = Message.demarshal(self._inbuf[:needed])
            except UnmarshalError as fail :
                self._disconnected("invalid incoming data: %s" % fail)
                raise
            #end try
            del self._inbuf[:needed]
            self._enqueue(message)
            count += 1
        #end while
        return \
            count
    #end _parse_inbuf

    def _enqueue(self, message) :
        if message.type not in _message_type_names :
            _logger.warning \
              (
                "ignoring message of unknown type %d from %s", message.type, message.sender
              )
        else :
            _logger.debug("received %r", message)
            future = None
            with self._inbound_cond :
                reply_serial = message.reply_serial
                if (
                        reply_serial != None
                    and
                        message.type in (MESSAGE_TYPE.METHOD_RETURN, MESSAGE_TYPE.ERROR)
                ) :
                    self._awaiting.discard(reply_serial)
                    future = self._reply_futures.pop(reply_serial, None)
                #end if
                if future == None :
                    self._inbound.append(message)
                    self._inbound_cond.notify_all()
                #end if
            #end with
            if future != None :
                self._in_loop(_set_future_result, future, message)
            #end if
        #end if
    #end _enqueue

    def _read_some(self, timeout) :
        # moves already-received complete messages to the incoming queue; if
        # there are none, waits up to timeout seconds for more input. Only the
        # thread that has set _reading may call this.
        if self._parse_inbuf() == 0 :
            sock = self._sock
            if sock == None :
                raise NotConnected()
            #end if
            try :
                if len(select.select((sock,), (), (), timeout)[0]) != 0 :
                    data = sock.recv(65536)
                else :
                    data = None
                #end if
            except (OSError, ValueError) as fail :
                if self._state == CONNECTION_STATE.CLOSED :
                    raise NotConnected()
                #end if
                self._disconnected("read failed: %s" % fail)
                raise NotConnected("connection lost: %s" % fail)
            #end try
            if data != None :
                if len(data) == 0 :
                    self._disconnected("connection closed by other end")
                else :
                    self._inbuf.extend(data)
                    self._parse_inbuf()
                #end if
            #end if
        #end if
    #end _read_some

    def _await_input(self, take, timeout, once) :
        # common routine for waiting for input. Repeatedly calls take (with the
        # incoming-queue lock held) until it returns something other than None,
        # which is returned; returns None on timeout. Reads from the socket
        # whenever no other thread is doing so; if once, then stops after
        # the first read.
        if timeout != None :
            deadline = time.monotonic() + timeout
        else :
            deadline = None
        #end if
        while True :
            reading = False
            with self._inbound_cond :
                while True :
                    result = take()
                    if result != None :
                        break
                    #end if
                    if self._state == CONNECTION_STATE.CLOSED :
                        raise NotConnected()
                    #end if
                    if deadline != None :
                        remaining = deadline - time.monotonic()
                        if remaining <= 0 and not once :
                            break
                        #end if
                    else :
                        remaining = None
                    #end if
                    if not self._reading :
                        self._reading = reading = True
                        break
                    #end if
                    if remaining != None and remaining <= 0 :
                        break
                    #end if
                    self._inbound_cond.wait(remaining)
                #end while
            #end with
            if not reading :
                break
            #end if
            try :
                if deadline != None :
                    self._read_some(max(deadline - time.monotonic(), 0))
                else :
                    self._read_some(None)
                #end if
            finally :
                with self._inbound_cond :
                    self._reading = False
                    self._inbound_cond.notify_all()
                #end with
            #end try
            if once :
                break
            #end if
        #end while
        return \
            result
    #end _await_input

    def read_write(self, timeout = 0) :
        "writes as much queued output as can go without blocking, then waits up to" \
        " timeout seconds for input, moving any complete incoming messages to the" \
        " queue for pop_message. Returns whether the connection is still open."
        with self._send_lock :
            self._check_open()
            try :
                self._write_outbound(False)
            finally :
                self._watch_output()
            #end try
        #end with
        self._await_input(lambda : None, _get_timeout(timeout), True)
        return \
            self.is_connected
    #end read_write

    @property
    def dispatch_status(self) :
        "DBUS.DISPATCH_DATA_REMAINS if there are incoming messages waiting to be" \
        " popped, else DBUS.DISPATCH_COMPLETE."
        with self._inbound_cond :
            result = (DBUS.DISPATCH_COMPLETE, DBUS.DISPATCH_DATA_REMAINS)[len(self._inbound) != 0]
        #end with
        return \
            result
    #end dispatch_status

    def dispatch(self, timeout = 0) :
        "reads whatever input is available, waiting up to timeout seconds, and" \
        " returns the resulting dispatch_status."
        self.read_write(timeout)
        return \
            self.dispatch_status
    #end dispatch

    def pop_message(self) :
        "removes and returns the next Message from the incoming queue, or None if" \
        " it is empty. Never blocks; use read_write or dispatch to fill the queue."
        with self._inbound_cond :
            if len(self._inbound) != 0 :
                result = self._inbound.popleft()
            elif self._state == CONNECTION_STATE.CLOSED :
                raise NotConnected()
            else :
                result = None
            #end if
        #end with
        return \
            result
    #end pop_message

    def _take_reply(self, serial) :
        # removes and returns the reply to the specified serial from the
        # incoming queue, if it is there. Caller must hold the incoming-queue lock.
        result = None
        for i, message in enumerate(self._inbound) :
            if (
                    message.reply_serial == serial
                and
                    message.type in (MESSAGE_TYPE.METHOD_RETURN, MESSAGE_TYPE.ERROR)
            ) :
                result = message
                del self._inbound[i]
                break
            #end if
        #end for
        return \
            result
    #end _take_reply

    def _call_and_wait(self, message, timeout) :
        serial = self.send(message)
        try :
            self.flush()
            reply = self._await_input(lambda : self._take_reply(serial), timeout, False)
        finally :
            with self._inbound_cond :
                self._awaiting.discard(serial)
            #end with
        #end try
        if reply == None :
            raise Timeout \
              (
                "no reply to %s call (serial %d) within %s seconds" % (message.member, serial, timeout)
              )
        #end if
        return \
            reply
    #end _call_and_wait

    def send_with_reply_and_block(self, message, timeout = DBUS.TIMEOUT_USE_DEFAULT, error = None) :
        "sends a method call Message and waits for the reply, which is returned." \
        " An error reply is raised as the corresponding exception, or put into" \
        " error if that is specified. Other incoming messages that arrive in the" \
        " meantime stay queued in their original order."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        if not message.expects_reply :
            raise TypeError("message must be a method call that expects a reply")
        #end if
        timeout = _get_timeout(timeout)
        error, my_error = _get_error(error)
        try :
            result = self._call_and_wait(message, timeout)
            if result.type == MESSAGE_TYPE.ERROR :
                raise DBusError.from_message(result)
            #end if
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end send_with_reply_and_block
    call_and_wait = send_with_reply_and_block

    def attach_asyncio(self, loop = None) :
        "attaches this Connection object to an asyncio event loop. If none is" \
        " specified, the running loop is used. Incoming messages are then read" \
        " as they arrive, and send_await_reply can be used."
        assert self.loop == None, "already attached to an event loop"
        self._check_open()
        if loop == None :
            loop = asyncio.get_running_loop()
        #end if
        self.loop = loop
        loop.add_reader(self._fileno, self._handle_readable)
        with self._send_lock :
            self._watch_output()
        #end with
        return \
            self
    #end attach_asyncio

    def _handle_readable(self) :
        # called by the event loop when the socket has input.
        with self._inbound_cond :
            reading = not self._reading and self._state != CONNECTION_STATE.CLOSED
            if reading :
                self._reading = True
            #end if
        #end with
        if reading :
            try :
                self._read_some(0)
            except DBusError as fail :
                _logger.warning("error reading from %s: %s", self._address, fail)
            finally :
                with self._inbound_cond :
                    self._reading = False
                    self._inbound_cond.notify_all()
                #end with
            #end try
            if self._dispatch_status != None :
                function, data = self._dispatch_status
                function(self, self.dispatch_status, data)
            #end if
        #end if
    #end _handle_readable

    def set_dispatch_status_function(self, function, data) :
        "sets a function to be called as function(connection, status, data) after" \
        " the event-loop reader has processed incoming data. Pass None to remove it."
        self._dispatch_status = (lambda : None, lambda : (function, data))[function != None]()
    #end set_dispatch_status_function

    async def send_await_reply(self, message, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "sends a method call Message and awaits its reply without blocking the event" \
        " loop. Returns the reply; an error reply is raised as the corresponding exception."
        assert self.loop != None, "no event loop to attach coroutine to"
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        if not message.expects_reply :
            raise TypeError("message must be a method call that expects a reply")
        #end if
        timeout = _get_timeout(timeout)
        serial = self.send(message)
        future = self.loop.create_future()
        with self._inbound_cond :
            reply = self._take_reply(serial)
            if reply == None :
                self._reply_futures[serial] = future
            #end if
        #end with
        try :
            if reply == None :
                try :
                    reply = await asyncio.wait_for(future, timeout)
                except asyncio.TimeoutError :
                    raise Timeout \
                      (
                        "no reply to %s call (serial %d) within %s seconds"
                      %
                        (message.member, serial, timeout)
                      )
                #end try
            #end if
        finally :
            with self._inbound_cond :
                self._reply_futures.pop(serial, None)
                self._awaiting.discard(serial)
            #end with
        #end try
        if reply.type == MESSAGE_TYPE.ERROR :
            raise DBusError.from_message(reply)
        #end if
        return \
            reply
    #end send_await_reply

    # Calls on the bus daemon

    def _bus_call(self, method, signature, args, out_signature, timeout) :
        # invokes a method on the bus daemon, returning the reply arguments.
        message = Message.new_method_call \
          (
            destination = DBUS.SERVICE_DBUS,
            path = DBUS.PATH_DBUS,
            iface = DBUS.INTERFACE_DBUS,
            method = method
          )
        message.append_objects(signature, *args)
        reply = self.send_with_reply_and_block(message, timeout)
        if reply.signature != out_signature :
            raise UnmarshalError \
              (
                "%s reply has signature %s, not %s" % (method, repr(reply.signature), repr(out_signature))
              )
        #end if
        return \
            reply.objects
    #end _bus_call

    def bus_register(self, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "registers this connection with the bus daemon, which assigns the unique name" \
        " that is returned and also available from bus_unique_name. This must be the" \
        " first thing done on a bus connection. Does nothing if already registered."
        error, my_error = _get_error(error)
        try :
            if self._unique_name == None :
                self._unique_name, = self._bus_call("Hello", "", (), "s", timeout)
                _logger.debug("registered with %s as %s", self._address, self._unique_name)
            #end if
        except DBusError as fail :
            error.set_from_exception(fail)
        #end try
        my_error.raise_if_set()
        return \
            self._unique_name
    #end bus_register

    def bus_request_name(self, name, flags, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "asks the bus daemon to assign the specified well-known name to this connection." \
        " flags is a combination of NAME_FLAG values. Returns a REQUEST_NAME_REPLY value;" \
        " outcomes other than PRIMARY_OWNER are not errors."
        if not isinstance(flags, int) or flags & ~_all_name_flags != 0 :
            raise ValueError("invalid name flags %s" % repr(flags))
        #end if
        error, my_error = _get_error(error)
        try :
            validate_well_known_name(name)
            code, = self._bus_call("RequestName", "su", (name, flags), "u", timeout)
            result = _reply_code(REQUEST_NAME_REPLY, code, "RequestName")
            _logger.debug("RequestName(%s, %#x) on %s: %s", name, flags, self._address, result.name)
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end bus_request_name

    def bus_release_name(self, name, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "asks the bus daemon to take back a well-known name from this connection." \
        " Returns a RELEASE_NAME_REPLY value."
        error, my_error = _get_error(error)
        try :
            validate_well_known_name(name)
            code, = self._bus_call("ReleaseName", "s", (name,), "u", timeout)
            result = _reply_code(RELEASE_NAME_REPLY, code, "ReleaseName")
            _logger.debug("ReleaseName(%s) on %s: %s", name, self._address, result.name)
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end bus_release_name

    def bus_name_has_owner(self, name, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "asks the bus daemon whether some connection currently owns the specified bus name."
        error, my_error = _get_error(error)
        try :
            validate_bus_name(name)
            result, = self._bus_call("NameHasOwner", "s", (name,), "b", timeout)
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end bus_name_has_owner

    def bus_get_name_owner(self, name, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "returns the unique name of the connection that owns the specified bus name."
        error, my_error = _get_error(error)
        try :
            validate_bus_name(name)
            result, = self._bus_call("GetNameOwner", "s", (name,), "s", timeout)
        except DBusError as fail :
            error.set_from_exception(fail)
            result = None
        #end try
        my_error.raise_if_set()
        return \
            result
    #end bus_get_name_owner

    def bus_add_match(self, rule, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "asks the bus daemon to route messages matching the rule string to this connection."
        error, my_error = _get_error(error)
        try :
            self._bus_call("AddMatch", "s", (rule,), "", timeout)
        except DBusError as fail :
            error.set_from_exception(fail)
        #end try
        my_error.raise_if_set()
    #end bus_add_match

    def bus_remove_match(self, rule, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "removes a rule previously added with bus_add_match."
        error, my_error = _get_error(error)
        try :
            self._bus_call("RemoveMatch", "s", (rule,), "", timeout)
        except DBusError as fail :
            error.set_from_exception(fail)
        #end try
        my_error.raise_if_set()
    #end bus_remove_match

    def __repr__(self) :
        return \
            (
                "<%s %s %s%s>"
            %
                (
                    self.__class__.__name__,
                    self._address,
                    self._state.name,
                    (lambda : "", lambda : " " + self._unique_name)[self._unique_name != None](),
                )
            )
    #end __repr__

#end Connection

def request_name(connection, name, flags, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
    "asks the bus daemon to assign a well-known name to connection; see" \
    " Connection.bus_request_name."
    return \
        connection.bus_request_name(name, flags, error, timeout)
#end request_name

def release_name(connection, name, error = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
    "asks the bus daemon to take back a well-known name from connection; see" \
    " Connection.bus_release_name."
    return \
        connection.bus_release_name(name, error, timeout)
#end release_name
