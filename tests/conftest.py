#+
# Test fixtures for Wirebus: an in-process stand-in for the bus daemon,
# good enough for exercising connections, name ownership, match rules
# and routing of messages between clients.
#
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import os
import re
import shutil
import socket
import tempfile
import threading
import time

import pytest

import wirebus as dbus
from wirebus import \
    DBUS

GUID = "1234567890abcdef1234567890abcdef"

_rule_item_re = re.compile(r"(\w+)='([^']*)'")

def parse_rule(rule) :
    return \
        dict(_rule_item_re.findall(rule))
#end parse_rule

def rule_matches(rule, message) :
    for key, value in rule.items() :
        if key == "type" :
            matches = dbus.Message.type_to_string(message.type) == value
        elif key in ("sender", "interface", "member", "path", "destination") :
            matches = getattr(message, key) == value
        else :
            matches = False
        #end if
        if not matches :
            break
        #end if
    else :
        matches = True
    #end for
    return \
        matches
#end rule_matches

class FakeClient :

    def __init__(self, sock) :
        self.sock = sock
        self.unique_name = None
        self.rules = []
        self.write_lock = threading.Lock()
    #end __init__

    def send(self, message) :
        data = message.marshal()
        with self.write_lock :
            self.sock.sendall(data)
        #end with
    #end send

#end FakeClient

class FakeBus :
    "minimal in-process stand-in for dbus-daemon, listening on a Unix socket" \
    " in a temporary directory. Clients can call the test-only bus method" \
    " TestNoMemory to get back a NoMemory error."

    def __init__(self, auth_reply = b"OK " + GUID.encode()) :
        self.dir = tempfile.mkdtemp(prefix = "wirebus")
        self.path = os.path.join(self.dir, "bus")
        self.address = "unix:path=%s" % self.path
        self.auth_reply = auth_reply
        self.auth_lines = []
        self.received = []
        self.lock = threading.RLock()
        self.clients = {} # unique name => FakeClient
        self.owners = {} # well-known name => unique name
        self.owner_flags = {} # well-known name => flags given by owner
        self.queues = {} # well-known name => list of unique names waiting
        self.next_id = 1
        self.serials = dbus.SerialAllocator()
        self.closing = False
        self.socks = []
        self.threads = []
        self.listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.listener.bind(self.path)
        self.listener.listen(16)
        self.listener.settimeout(0.05)
        self.accept_thread = threading.Thread(target = self._accept_loop, daemon = True)
        self.accept_thread.start()
    #end __init__

    def close(self) :
        if not self.closing :
            self.closing = True
            self.accept_thread.join()
            self.listener.close()
            with self.lock :
                socks = list(self.socks)
            #end with
            for sock in socks :
                try :
                    sock.shutdown(socket.SHUT_RDWR)
                except OSError :
                    pass
                #end try
            #end for
            for thread in self.threads :
                thread.join(2)
            #end for
            shutil.rmtree(self.dir, ignore_errors = True)
        #end if
    #end close

    def _accept_loop(self) :
        while not self.closing :
            try :
                sock, _ = self.listener.accept()
            except socket.timeout :
                continue
            except OSError :
                break
            #end try
            sock.settimeout(None)
            with self.lock :
                self.socks.append(sock)
            #end with
            thread = threading.Thread(target = self._serve, args = (sock,), daemon = True)
            self.threads.append(thread)
            thread.start()
        #end while
    #end _accept_loop

    @staticmethod
    def _read_line(sock, buf) :
        while b"\r\n" not in buf :
            data = sock.recv(4096)
            if len(data) == 0 :
                raise EOFError("client went away during authentication")
            #end if
            buf += data
        #end while
        line, _, rest = buf.partition(b"\r\n")
        return \
            line, rest
    #end _read_line

    def _serve(self, sock) :
        client = FakeClient(sock)
        try :
            buf = b""
            while len(buf) == 0 :
                buf = sock.recv(4096)
                if len(buf) == 0 :
                    raise EOFError("client went away before authenticating")
                #end if
            #end while
            assert buf[:1] == b"\0"
            line, buf = self._read_line(sock, buf[1:])
            self.auth_lines.append(line)
            sock.sendall(self.auth_reply + b"\r\n")
            if self.auth_reply.startswith(b"OK") :
                line, buf = self._read_line(sock, buf)
                assert line == b"BEGIN"
                buf = bytearray(buf)
                while True :
                    needed = dbus.Message.demarshal_bytes_needed(buf)
                    if needed != 0 and len(buf) >= needed :
                        message = dbus.Message.demarshal(buf[:needed])
                        del buf[:needed]
                        self._handle(client, message)
                    else :
                        data = sock.recv(65536)
                        if len(data) == 0 :
                            break
                        #end if
                        buf.extend(data)
                    #end if
                #end while
            #end if
        except (OSError, EOFError) :
            pass
        finally :
            self._drop_client(client)
            sock.close()
        #end try
    #end _serve

    # sending from the bus itself

    def _send_from_bus(self, client, message) :
        message.serial = self.serials.next()
        message.sender = DBUS.SERVICE_DBUS
        if client.unique_name != None and message.destination == None :
            message.destination = client.unique_name
        #end if
        client.send(message)
    #end _send_from_bus

    def _reply(self, client, message, signature = "", *args) :
        reply = message.new_method_return()
        reply.append_objects(signature, *args)
        self._send_from_bus(client, reply)
    #end _reply

    def _reply_error(self, client, message, name, text) :
        self._send_from_bus(client, message.new_error(name, text))
    #end _reply_error

    def _notify(self, notes) :
        for client, member, name in notes :
            signal = dbus.Message.new_signal(DBUS.PATH_DBUS, DBUS.INTERFACE_DBUS, member)
            signal.append_objects("s", name)
            self._send_from_bus(client, signal)
        #end for
    #end _notify

    # routing

    def _resolve(self, name) :
        if name.startswith(":") :
            result = self.clients.get(name)
        else :
            result = self.clients.get(self.owners.get(name))
        #end if
        return \
            result
    #end _resolve

    def _forwarded(self, client, message) :
        result = message.copy()
        if client.unique_name != None :
            result.sender = client.unique_name
        #end if
        return \
            result
    #end _forwarded

    def _handle(self, client, message) :
        with self.lock :
            self.received.append(message)
            if message.destination == DBUS.SERVICE_DBUS :
                self._handle_bus_call(client, message)
            elif message.destination != None :
                target = self._resolve(message.destination)
                if target != None :
                    target.send(self._forwarded(client, message))
                elif message.type == dbus.MESSAGE_TYPE.METHOD_CALL and not message.no_reply :
                    self._reply_error \
                      (
                        client, message,
                        DBUS.ERROR_SERVICE_UNKNOWN,
                        "The name %s was not provided by any .service files" % message.destination
                      )
                #end if
            elif message.type == dbus.MESSAGE_TYPE.SIGNAL :
                forwarded = self._forwarded(client, message)
                for other in list(self.clients.values()) :
                    if any(rule_matches(rule, forwarded) for rule in other.rules) :
                        other.send(forwarded)
                    #end if
                #end for
            #end if
        #end with
    #end _handle

    def _handle_bus_call(self, client, message) :
        member = message.member
        try :
            if member == "Hello" :
                if client.unique_name != None :
                    self._reply_error(client, message, DBUS.ERROR_FAILED, "Already handled an Hello message")
                else :
                    client.unique_name = ":1.%d" % self.next_id
                    self.next_id += 1
                    self.clients[client.unique_name] = client
                    self._reply(client, message, "s", client.unique_name)
                    self._notify([(client, "NameAcquired", client.unique_name)])
                #end if
            elif member == "RequestName" :
                name, flags = message.expect_objects("su")
                result, notes = self._request_name(client, name, flags)
                self._reply(client, message, "u", result)
                self._notify(notes)
            elif member == "ReleaseName" :
                name, = message.expect_objects("s")
                result, notes = self._release_name(client, name)
                self._reply(client, message, "u", result)
                self._notify(notes)
            elif member == "NameHasOwner" :
                name, = message.expect_objects("s")
                self._reply(client, message, "b", self._resolve(name) != None)
            elif member == "GetNameOwner" :
                name, = message.expect_objects("s")
                target = self._resolve(name)
                if target == None :
                    self._reply_error \
                      (
                        client, message,
                        DBUS.ERROR_NAME_HAS_NO_OWNER,
                        "Could not get owner of name '%s': no such name" % name
                      )
                else :
                    self._reply(client, message, "s", target.unique_name)
                #end if
            elif member == "AddMatch" :
                rule, = message.expect_objects("s")
                client.rules.append(parse_rule(rule))
                self._reply(client, message)
            elif member == "RemoveMatch" :
                rule, = message.expect_objects("s")
                rule = parse_rule(rule)
                if rule in client.rules :
                    client.rules.remove(rule)
                    self._reply(client, message)
                else :
                    self._reply_error(client, message, DBUS.ERROR_MATCH_RULE_NOT_FOUND, "The given match rule wasn't found")
                #end if
            elif member == "TestNoMemory" :
                self._reply_error(client, message, DBUS.ERROR_NO_MEMORY, "Not enough memory")
            else :
                self._reply_error \
                  (
                    client, message,
                    DBUS.ERROR_UNKNOWN_METHOD,
                    "%s does not understand message %s" % (DBUS.SERVICE_DBUS, member)
                  )
            #end if
        except TypeError as fail :
            self._reply_error(client, message, DBUS.ERROR_INVALID_ARGS, str(fail))
        #end try
    #end _handle_bus_call

    # name ownership

    def _promote(self, name) :
        queue = self.queues.get(name, [])
        if len(queue) != 0 :
            new_owner = queue.pop(0)
            self.owners[name] = new_owner
            self.owner_flags[name] = 0
            notes = [(self.clients[new_owner], "NameAcquired", name)]
        else :
            self.owners.pop(name, None)
            self.owner_flags.pop(name, None)
            notes = []
        #end if
        return \
            notes
    #end _promote

    def _request_name(self, client, name, flags) :
        me = client.unique_name
        owner = self.owners.get(name)
        queue = self.queues.setdefault(name, [])
        notes = []
        if owner == None :
            self.owners[name] = me
            self.owner_flags[name] = flags
            notes.append((client, "NameAcquired", name))
            result = DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
        elif owner == me :
            self.owner_flags[name] = flags
            result = DBUS.REQUEST_NAME_REPLY_ALREADY_OWNER
        elif (
                flags & DBUS.NAME_FLAG_REPLACE_EXISTING != 0
            and
                self.owner_flags[name] & DBUS.NAME_FLAG_ALLOW_REPLACEMENT != 0
        ) :
            previous_flags = self.owner_flags[name]
            if me in queue :
                queue.remove(me)
            #end if
            if previous_flags & DBUS.NAME_FLAG_DO_NOT_QUEUE == 0 :
                queue.insert(0, owner)
            #end if
            self.owners[name] = me
            self.owner_flags[name] = flags
            notes.append((self.clients[owner], "NameLost", name))
            notes.append((client, "NameAcquired", name))
            result = DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
        elif flags & DBUS.NAME_FLAG_DO_NOT_QUEUE != 0 :
            result = DBUS.REQUEST_NAME_REPLY_EXISTS
        else :
            if me not in queue :
                queue.append(me)
            #end if
            result = DBUS.REQUEST_NAME_REPLY_IN_QUEUE
        #end if
        return \
            result, notes
    #end _request_name

    def _release_name(self, client, name) :
        me = client.unique_name
        owner = self.owners.get(name)
        queue = self.queues.get(name, [])
        notes = []
        if owner == None :
            result = DBUS.RELEASE_NAME_REPLY_NON_EXISTENT
        elif owner == me :
            notes.append((client, "NameLost", name))
            notes.extend(self._promote(name))
            result = DBUS.RELEASE_NAME_REPLY_RELEASED
        elif me in queue :
            queue.remove(me)
            result = DBUS.RELEASE_NAME_REPLY_RELEASED
        else :
            result = DBUS.RELEASE_NAME_REPLY_NOT_OWNER
        #end if
        return \
            result, notes
    #end _release_name

    def _drop_client(self, client) :
        with self.lock :
            if client.unique_name != None :
                self.clients.pop(client.unique_name, None)
                for queue in self.queues.values() :
                    if client.unique_name in queue :
                        queue.remove(client.unique_name)
                    #end if
                #end for
                notes = []
                for name, owner in list(self.owners.items()) :
                    if owner == client.unique_name :
                        notes.extend(self._promote(name))
                    #end if
                #end for
                try :
                    self._notify(notes)
                except OSError :
                    pass
                #end try
            #end if
        #end with
    #end _drop_client

#end FakeBus

def wait_for_message(conn, predicate, timeout = 5) :
    "pops incoming messages from conn, discarding them, until one satisfies" \
    " predicate, which is returned. Returns None on timeout."
    deadline = time.monotonic() + timeout
    while True :
        message = conn.pop_message()
        if message != None :
            if predicate(message) :
                break
            #end if
        else :
            remaining = deadline - time.monotonic()
            if remaining <= 0 :
                break
            #end if
            conn.read_write(min(remaining, 0.1))
        #end if
    #end while
    return \
        message
#end wait_for_message

def check_ping_signal(address) :
    "one connection takes the name org.test.Demo and broadcasts a Ping signal;" \
    " a second connection must receive it via dispatch and pop_message."
    owner = dbus.Connection.open(address, private = True)
    listener = dbus.Connection.open(address, private = True)
    try :
        owner.bus_register(timeout = 5)
        listener.bus_register(timeout = 5)
        assert \
            (
                owner.bus_request_name("org.test.Demo", DBUS.NAME_FLAG_DO_NOT_QUEUE, timeout = 5)
            ==
                dbus.REQUEST_NAME_REPLY.PRIMARY_OWNER
            )
        listener.bus_add_match("type='signal',interface='org.test.Demo'", timeout = 5)
        signal = dbus.Message.new_signal("/org/test/Demo", "org.test.Demo", "Ping")
        signal.append_objects("s", "hello")
        owner.send(signal)
        owner.flush()
        received = None
        deadline = time.monotonic() + 5
        while received == None and time.monotonic() < deadline :
            listener.dispatch(0.1)
            while True :
                message = listener.pop_message()
                if message == None :
                    break
                #end if
                if message.type == dbus.MESSAGE_TYPE.SIGNAL and message.interface == "org.test.Demo" :
                    received = message
                    break
                #end if
            #end while
        #end while
        assert received != None
        assert received.path == "/org/test/Demo" and received.member == "Ping"
        assert received.objects == ["hello"]
        assert received.sender == owner.bus_unique_name
    finally :
        listener.close()
        owner.close()
    #end try
#end check_ping_signal

@pytest.fixture
def fake_bus() :
    bus = FakeBus()
    yield bus
    bus.close()
#end fake_bus

@pytest.fixture
def wait_for() :
    return \
        wait_for_message
#end wait_for

@pytest.fixture
def bus_conn(fake_bus) :
    "a private connection to the fake bus, already registered."
    conn = dbus.Connection.open(fake_bus.address, private = True)
    conn.bus_register(timeout = 5)
    yield conn
    conn.close()
#end bus_conn

@pytest.fixture
def other_conn(fake_bus) :
    "a second registered connection to the same fake bus."
    conn = dbus.Connection.open(fake_bus.address, private = True)
    conn.bus_register(timeout = 5)
    yield conn
    conn.close()
#end other_conn
