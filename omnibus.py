"""
Simplified higher-level interface to D-Bus on top of wirebus. Keeps track
of bus names, routes incoming signals to listener functions and incoming
method calls to handler functions, and offers one-call invocation of
methods on other connections, all with the option of running via an
asyncio event loop.
"""
#+
# Copyright 2017-2018 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import logging
from weakref import \
    ref as weak_ref, \
    WeakValueDictionary
import asyncio
import wirebus as dbus
from wirebus import \
    DBUS, \
    MESSAGE_TYPE, \
    REQUEST_NAME_REPLY, \
    RELEASE_NAME_REPLY

_logger = logging.getLogger(__name__)

def format_rule(rule) :
    "converts a dict of match-rule keys and values to the string form that the" \
    " bus daemon expects. Entries with None values are left out."

    def escape(value) :
        # apostrophes cannot appear inside quotes, so close the quotes,
        # put in an escaped apostrophe, then open the quotes again.
        return \
            "'%s'" % value.replace("'", "'\\''")
    #end escape

#begin format_rule
    return \
        ",".join \
          (
            "%s=%s" % (key, escape(str(value)))
            for key, value in rule.items()
            if value != None
          )
#end format_rule

def _signal_key(path, interface, name) :
    # constructs a key for the signal-listener dictionary from the
    # given args.
    return \
        (path, interface, name)
#end _signal_key

def _signal_rule(path, interface, name) :
    # constructs a D-Bus match rule from the given args.
    return \
        format_rule \
          (
            {
                "type" : "signal",
                "path" : path,
                "interface" : interface,
                "member" : name,
            }
          )
#end _signal_rule

class ErrorReturn(Exception) :
    "method handlers can raise this to report an error that will be returned" \
    " in a message back to the caller."

    def __init__(self, name, message) :
        self.args = (name, message)
    #end __init__

    def as_reply(self, message) :
        "constructs the error reply to the method call message."
        return \
            message.new_error(self.args[0], self.args[1])
    #end as_reply

#end ErrorReturn

class Connection :
    "higher-level wrapper around wirebus.Connection. Do not instantiate directly: use" \
    " the session_bus(), system_bus(), starter_bus(), connect_bus() or connect_server()" \
    " calls in this module.\n" \
    "\n" \
    "Incoming messages are handled by dispatch(), or automatically as they arrive" \
    " once the Connection has been attached to an asyncio event loop."

    __slots__ = \
        (
            "__weakref__",
            "connection",
            "loop",
            "bus_names_acquired",
            "bus_names_pending",
            "_signal_listeners",
            "_method_handlers",
            "_registered_bus_names_listeners",
            "_tasks",
        ) # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, connection) :
        # always return the same Connection for the same wirebus.Connection.
        if not isinstance(connection, dbus.Connection) :
            raise TypeError("connection must be a Connection")
        #end if
        self = celf._instances.get(connection)
        if self == None :
            self = super().__new__(celf)
            self.connection = connection
            self.loop = connection.loop
            unique_name = connection.bus_unique_name
            self.bus_names_acquired = (lambda : set(), lambda : {unique_name})[unique_name != None]()
            self.bus_names_pending = set()
            self._signal_listeners = {}
            self._method_handlers = {}
            self._registered_bus_names_listeners = False
            self._tasks = set()
            celf._instances[connection] = self
        #end if
        return \
            self
    #end __new__

    def attach_asyncio(self, loop = None) :
        "attaches this Connection object to an asyncio event loop. If none is" \
        " specified, the running event loop is used. Incoming messages are then" \
        " handled as they arrive."
        self.connection.attach_asyncio(loop)
        self.loop = self.connection.loop
        self.connection.set_dispatch_status_function(self._dispatch_status_changed, weak_ref(self))
        return \
            self
    #end attach_asyncio

    @staticmethod
    def _dispatch_status_changed(conn, status, w_self) :
        # called by the event-loop reader after it has queued incoming messages.
        self = w_self()
        if self != None and status == DBUS.DISPATCH_DATA_REMAINS :
            self.dispatch_queued()
        #end if
    #end _dispatch_status_changed

    def _create_task(self, coro) :
        # runs a coroutine returned from a user callback, keeping a reference
        # to the task until it finishes.
        if self.loop == None :
            coro.close()
            raise TypeError("coroutine callbacks need the Connection to be attached to an event loop")
        #end if
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return \
            task
    #end _create_task

    def close(self) :
        "closes the underlying wirebus.Connection."
        self.connection.close()
    #end close

    # Bus names

    def _listen_bus_names(self) :
        if not self._registered_bus_names_listeners :
            for member in ("NameAcquired", "NameLost") :
                self.connection.bus_add_match \
                  (
                    format_rule
                      (
                        {
                            "type" : "signal",
                            "sender" : DBUS.SERVICE_DBUS,
                            "interface" : DBUS.INTERFACE_DBUS,
                            "member" : member,
                        }
                      )
                  )
            #end for
            self._registered_bus_names_listeners = True
        #end if
    #end _listen_bus_names

    def _bus_name_changed(self, message) :
        # keeps track of bus names as the bus daemon reports them.
        bus_name, = message.expect_objects("s")
        self.bus_names_pending.discard(bus_name)
        if message.member == "NameAcquired" :
            self.bus_names_acquired.add(bus_name)
        else :
            self.bus_names_acquired.discard(bus_name)
        #end if
        _logger.debug("%s: %s %s", self.connection.bus_unique_name, message.member, bus_name)
    #end _bus_name_changed

    def request_name(self, bus_name, flags, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "registers a bus name. flags is a combination of wirebus.NAME_FLAG values." \
        " Returns the REQUEST_NAME_REPLY outcome, which is also reflected in" \
        " bus_names_acquired and bus_names_pending."
        self._listen_bus_names()
        result = self.connection.bus_request_name(bus_name, flags, timeout = timeout)
        if result in (REQUEST_NAME_REPLY.PRIMARY_OWNER, REQUEST_NAME_REPLY.ALREADY_OWNER) :
            self.bus_names_pending.discard(bus_name)
            self.bus_names_acquired.add(bus_name)
        elif result == REQUEST_NAME_REPLY.IN_QUEUE :
            self.bus_names_pending.add(bus_name)
        #end if
        return \
            result
    #end request_name

    def release_name(self, bus_name, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "releases a registered bus name, or gives up a place in the queue for it."
        result = self.connection.bus_release_name(bus_name, timeout = timeout)
        if result == RELEASE_NAME_REPLY.RELEASED :
            self.bus_names_acquired.discard(bus_name)
            self.bus_names_pending.discard(bus_name)
        #end if
        return \
            result
    #end release_name

    # Signals

    def listen_signal(self, *, path = None, interface, name, func) :
        "registers a callback which will be invoked as func(conn, message) when a" \
        " signal is received for the specified interface and name, from the specified" \
        " object path or, if path is None, from any path. func may return a coroutine" \
        " if the Connection is attached to an event loop."
        if path != None :
            dbus.validate_path(path)
        #end if
        dbus.validate_interface(interface)
        dbus.validate_member(name)
        rulekey = _signal_key(path, interface, name)
        if rulekey not in self._signal_listeners :
            if self.connection.bus_unique_name != None :
                self.connection.bus_add_match(_signal_rule(path, interface, name))
            #end if
            self._signal_listeners[rulekey] = []
        #end if
        self._signal_listeners[rulekey].append(func)
    #end listen_signal

    def unlisten_signal(self, *, path = None, interface, name, func) :
        "unregisters a previously-registered callback which would have been invoked" \
        " when a signal is received for the specified path, interface and name."
        rulekey = _signal_key(path, interface, name)
        listeners = self._signal_listeners.get(rulekey)
        if listeners != None :
            try :
                listeners.remove(func)
            except ValueError :
                pass
            #end try
            if len(listeners) == 0 :
                if self.connection.bus_unique_name != None and self.connection.is_connected :
                    ignore = dbus.Error.init()
                    self.connection.bus_remove_match(_signal_rule(path, interface, name), ignore)
                    if ignore.is_set :
                        _logger.debug("cannot remove match rule: %s", ignore.exception)
                    #end if
                #end if
                del self._signal_listeners[rulekey]
            #end if
        #end if
    #end unlisten_signal

    def send_signal(self, *, path, interface, name, signature = "", args = ()) :
        "sends a signal with the specified interface and name from the specified" \
        " object path, with args interpreted according to signature. Returns the" \
        " serial number of the message."
        message = dbus.Message.new_signal \
          (
            path = path,
            iface = interface,
            name = name
          )
        message.append_objects(signature, *args)
        return \
            self.connection.send(message)
    #end send_signal

    # Methods

    def register_method(self, *, path, interface, name, in_signature = "", out_signature = "", func) :
        "registers a handler for incoming calls to the specified method on the specified" \
        " object path. func is invoked as\n" \
        "\n" \
        "    func(conn, message, *args)\n" \
        "\n" \
        "where args are the call arguments, which must match in_signature. It returns" \
        " a sequence of values to be sent back according to out_signature (None for" \
        " none), or raises ErrorReturn to send back an error. func may instead return" \
        " a coroutine if the Connection is attached to an event loop."
        dbus.validate_path(path)
        dbus.validate_interface(interface)
        dbus.validate_member(name)
        dbus.signature_validate(in_signature)
        dbus.signature_validate(out_signature)
        self._method_handlers[(path, interface, name)] = (in_signature, out_signature, func)
    #end register_method

    def unregister_method(self, *, path, interface, name) :
        "removes a handler registered with register_method."
        self._method_handlers.pop((path, interface, name), None)
    #end unregister_method

    def _method_call_message(self, destination, path, interface, name, signature, args) :
        message = dbus.Message.new_method_call \
          (
            destination = destination,
            path = path,
            iface = interface,
            method = name
          )
        message.append_objects(signature, *args)
        return \
            message
    #end _method_call_message

    @staticmethod
    def _reply_objects(reply, out_signature) :
        if out_signature != None :
            result = reply.expect_return_objects(out_signature)
        else :
            result = reply.objects
        #end if
        return \
            result
    #end _reply_objects

    def send_method_with_reply_and_block \
      (
        self,
        *,
        destination,
        path,
        interface,
        name,
        signature = "",
        args = (),
        out_signature = None,
        timeout = DBUS.TIMEOUT_USE_DEFAULT
      ) :
        "calls the specified method with args interpreted according to signature," \
        " and waits for the reply.\n" \
        "\n" \
        "An exception is raised if the return is an error; otherwise a list of" \
        " the reply args is returned, after checking they match out_signature" \
        " if that is not None."
        message = self._method_call_message(destination, path, interface, name, signature, args)
        reply = self.connection.send_with_reply_and_block(message, timeout)
        return \
            self._reply_objects(reply, out_signature)
    #end send_method_with_reply_and_block

    async def send_method_await_reply \
      (
        self,
        *,
        destination,
        path,
        interface,
        name,
        signature = "",
        args = (),
        out_signature = None,
        timeout = DBUS.TIMEOUT_USE_DEFAULT
      ) :
        "calls the specified method with args interpreted according to signature," \
        " and awaits the reply without blocking the event loop.\n" \
        "\n" \
        "An exception is raised if the return is an error; otherwise a list of" \
        " the reply args is returned, after checking they match out_signature" \
        " if that is not None."
        assert self.loop != None, "no event loop to attach coroutine to"
        message = self._method_call_message(destination, path, interface, name, signature, args)
        reply = await self.connection.send_await_reply(message, timeout)
        return \
            self._reply_objects(reply, out_signature)
    #end send_method_await_reply

    def _send_reply(self, message, reply) :
        if not message.no_reply :
            self.connection.send(reply)
        #end if
    #end _send_reply

    def _method_return(self, message, out_signature, result) :
        # constructs the reply to message from what its handler returned.
        try :
            reply = message.new_method_return()
            if result == None :
                result = ()
            #end if
            reply.append_objects(out_signature, *result)
        except (dbus.MarshalError, ValueError, TypeError) as fail :
            _logger.warning \
              (
                "handler for %s.%s returned unsuitable values: %s",
                message.interface, message.member, fail
              )
            reply = message.new_error(DBUS.ERROR_FAILED, "method returned invalid result: %s" % fail)
        #end try
        return \
            reply
    #end _method_return

    async def _await_method_result(self, message, out_signature, coro) :
        try :
            reply = self._method_return(message, out_signature, await coro)
        except ErrorReturn as fail :
            reply = fail.as_reply(message)
        #end try
        self._send_reply(message, reply)
    #end _await_method_result

    def _handle_method_call(self, message) :
        entry = self._method_handlers.get((message.path, message.interface, message.member))
        if entry == None :
            self._send_reply \
              (
                message,
                message.new_error
                  (
                    DBUS.ERROR_UNKNOWN_METHOD,
                    "no method %s.%s on object %s" % (message.interface, message.member, message.path)
                  )
              )
        else :
            in_signature, out_signature, func = entry
            if message.signature != in_signature :
                self._send_reply \
                  (
                    message,
                    message.new_error
                      (
                        DBUS.ERROR_INVALID_ARGS,
                        "method %s expects signature %s, not %s"
                      %
                        (message.member, repr(in_signature), repr(message.signature))
                      )
                  )
            else :
                try :
                    result = func(self, message, *message.objects)
                except ErrorReturn as fail :
                    self._send_reply(message, fail.as_reply(message))
                else :
                    if asyncio.iscoroutine(result) :
                        self._create_task(self._await_method_result(message, out_signature, result))
                    else :
                        self._send_reply(message, self._method_return(message, out_signature, result))
                    #end if
                #end try
            #end if
        #end if
    #end _handle_method_call

    # Dispatching

    def _handle_message(self, message) :
        if message.type == MESSAGE_TYPE.SIGNAL :
            if (
                    message.sender == DBUS.SERVICE_DBUS
                and
                    message.interface == DBUS.INTERFACE_DBUS
                and
                    message.member in ("NameAcquired", "NameLost")
                and
                    message.signature == "s"
            ) :
                self._bus_name_changed(message)
            #end if
            for rulekey in \
                (
                    _signal_key(message.path, message.interface, message.member),
                    _signal_key(None, message.interface, message.member),
                ) \
            :
                for func in list(self._signal_listeners.get(rulekey, ())) :
                    result = func(self, message)
                    if asyncio.iscoroutine(result) :
                        self._create_task(result)
                    #end if
                #end for
            #end for
        elif message.type == MESSAGE_TYPE.METHOD_CALL :
            self._handle_method_call(message)
        else :
            _logger.debug("ignoring unexpected %r", message)
        #end if
    #end _handle_message

    def dispatch_queued(self) :
        "handles all the messages already in the incoming queue, returning how many" \
        " there were."
        count = 0
        while True :
            message = self.connection.pop_message()
            if message == None :
                break
            #end if
            self._handle_message(message)
            count += 1
        #end while
        return \
            count
    #end dispatch_queued

    def dispatch(self, timeout = 0) :
        "reads incoming messages, waiting up to timeout seconds, then handles all" \
        " that are queued: signals go to the registered listeners, and method calls" \
        " to the registered handlers, or get an UnknownMethod error if there are" \
        " none. Returns the number of messages handled."
        self.connection.read_write(timeout)
        return \
            self.dispatch_queued()
    #end dispatch

#end Connection

def session_bus() :
    "returns a Connection object for the current D-Bus session bus."
    return \
        Connection(dbus.Connection.bus_get(DBUS.BUS_SESSION, private = False))
#end session_bus

def system_bus() :
    "returns a Connection object for the D-Bus system bus."
    return \
        Connection(dbus.Connection.bus_get(DBUS.BUS_SYSTEM, private = False))
#end system_bus

def starter_bus() :
    "returns a Connection object for the D-Bus starter bus."
    return \
        Connection(dbus.Connection.bus_get(DBUS.BUS_STARTER, private = False))
#end starter_bus

def connect_bus(address, private = False) :
    "opens a connection to a bus daemon at the specified address, registers" \
    " with it and returns a Connection object for the connection."
    conn = dbus.Connection.open(address, private)
    try :
        conn.bus_register()
    except dbus.DBusError :
        conn.close()
        raise
    #end try
    return \
        Connection(conn)
#end connect_bus

def connect_server(address) :
    "opens a peer-to-peer connection to a server at the specified address, with" \
    " no bus daemon involved, and returns a Connection object for the connection."
    return \
        Connection(dbus.Connection.open(address, private = False))
#end connect_server
