#+
# Tests of server-address parsing and bus-address lookup.
#
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import os
import errno
import socket

import pytest

import wirebus as dbus
from wirebus import \
    DBUS, \
    BUS_TYPE

def test_parse_entries() :
    entries = dbus.AddressEntries.parse \
      (
        "unix:path=/tmp/dbus%2dtest;tcp:host=localhost,port=1234,family=ipv4"
      )
    assert len(entries) == 2
    unix, tcp = entries
    assert unix.method == "unix"
    assert unix["path"] == "/tmp/dbus-test"
    assert unix["abstract"] == None
    assert tcp.method == "tcp"
    assert tcp.keys == ["host", "port", "family"]
    assert tcp.get_value("port") == "1234"
    assert str(tcp) == "tcp:host=localhost,port=1234,family=ipv4"
    assert list(e.method for e in entries) == ["unix", "tcp"]
#end test_parse_entries

def test_parse_empty_entries() :
    assert len(dbus.AddressEntries.parse("")) == 0
    assert len(dbus.AddressEntries.parse("unix:path=/x;;")) == 1
    assert dbus.AddressEntries.parse("autolaunch:")[0].keys == []
#end test_parse_empty_entries

@pytest.mark.parametrize \
  (
    "address",
    [
        "nocolon",
        ":path=/x",
        "unix:path",
        "unix:=x",
        "unix:path=/x,path=/y",
        "unix:path=%zz",
        "unix:path=%2",
        "unix:path=/with space",
    ]
  )
def test_parse_invalid(address) :
    with pytest.raises(dbus.ConnectError) as info :
        dbus.AddressEntries.parse(address)
    #end with
    assert info.value.name == DBUS.ERROR_BAD_ADDRESS
    error = dbus.Error.init()
    assert dbus.AddressEntries.parse(address, error) == None
    assert error.has_name(DBUS.ERROR_BAD_ADDRESS)
#end test_parse_invalid

def test_escaping() :
    assert dbus.address_escape_value("/tmp/a b,c") == "/tmp/a%20b%2cc"
    assert dbus.address_unescape_value("/tmp/a%20b%2Cc") == "/tmp/a b,c"
    assert dbus.address_unescape_value(dbus.address_escape_value("ü=;")) == "ü=;"
#end test_escaping

def test_session_bus_address(monkeypatch, tmp_path) :
    monkeypatch.setenv("DBUS_SESSION_BUS_ADDRESS", "unix:path=/run/test/bus")
    assert dbus.bus_address(BUS_TYPE.SESSION) == "unix:path=/run/test/bus"
    monkeypatch.delenv("DBUS_SESSION_BUS_ADDRESS")
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
    with pytest.raises(dbus.ConnectError) as info :
        dbus.bus_address(BUS_TYPE.SESSION)
    #end with
    assert info.value.name == DBUS.ERROR_BAD_ADDRESS
    (tmp_path / "bus").touch()
    address = dbus.bus_address(DBUS.BUS_SESSION)
    entry, = dbus.AddressEntries.parse(address)
    assert entry["path"] == os.path.join(str(tmp_path), "bus")
#end test_session_bus_address

def test_system_bus_address(monkeypatch) :
    monkeypatch.delenv("DBUS_SYSTEM_BUS_ADDRESS", raising = False)
    assert dbus.bus_address(BUS_TYPE.SYSTEM) == DBUS.SYSTEM_BUS_DEFAULT_ADDRESS
    monkeypatch.setenv("DBUS_SYSTEM_BUS_ADDRESS", "tcp:host=example.com,port=4")
    assert dbus.bus_address(BUS_TYPE.SYSTEM) == "tcp:host=example.com,port=4"
#end test_system_bus_address

def test_starter_bus_address(monkeypatch) :
    monkeypatch.delenv("DBUS_STARTER_ADDRESS", raising = False)
    monkeypatch.delenv("DBUS_STARTER_BUS_TYPE", raising = False)
    with pytest.raises(dbus.ConnectError) :
        dbus.bus_address(BUS_TYPE.STARTER)
    #end with
    monkeypatch.setenv("DBUS_STARTER_BUS_TYPE", "session")
    monkeypatch.setenv("DBUS_SESSION_BUS_ADDRESS", "unix:path=/run/session")
    assert dbus.bus_address(BUS_TYPE.STARTER) == "unix:path=/run/session"
    monkeypatch.setenv("DBUS_STARTER_ADDRESS", "unix:path=/run/starter")
    assert dbus.bus_address(BUS_TYPE.STARTER) == "unix:path=/run/starter"
    with pytest.raises(ValueError) :
        dbus.bus_address(7)
    #end with
#end test_starter_bus_address

def test_open_unreachable(tmp_path) :
    with pytest.raises(dbus.ConnectError) as info :
        dbus.Connection.open("unix:path=%s" % (tmp_path / "nobody-home"), private = True)
    #end with
    assert info.value.name == DBUS.ERROR_NO_SERVER
    error = dbus.Error.init()
    assert dbus.Connection.open("unix:path=%s" % (tmp_path / "nobody-home"), True, error) == None
    assert error.is_set
#end test_open_unreachable

def test_open_unsupported_transport() :
    with pytest.raises(dbus.UnsupportedTransport) as info :
        dbus.Connection.open("launchd:env=DBUS_LAUNCHD_SESSION_BUS_SOCKET", private = True)
    #end with
    assert info.value.name == DBUS.ERROR_NOT_SUPPORTED
    assert isinstance(info.value, dbus.ConnectError)
#end test_open_unsupported_transport

@pytest.mark.parametrize \
  (
    "address",
    [
        "",
        "unix:",
        "unix:path=/x,abstract=y",
        "tcp:host=localhost",
        "tcp:host=localhost,port=12,family=ipx",
    ]
  )
def test_open_bad_address(address) :
    with pytest.raises(dbus.ConnectError) as info :
        dbus.Connection.open(address, private = True)
    #end with
    assert info.value.name == DBUS.ERROR_BAD_ADDRESS
#end test_open_bad_address

def test_later_entries_tried(fake_bus, tmp_path) :
    address = "unix:path=%s;%s" % (tmp_path / "nobody-home", fake_bus.address)
    conn = dbus.Connection.open(address, private = True)
    try :
        assert conn.is_authenticated
        assert conn.address == address
    finally :
        conn.close()
    #end try
#end test_later_entries_tried

class NoInetSocket(socket.socket) :
    "a socket class for a host without IP networking."

    def __init__(self, family = -1, *args, **kwargs) :
        if family in (socket.AF_INET, socket.AF_INET6) :
            raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
        #end if
        super().__init__(family, *args, **kwargs)
    #end __init__

#end NoInetSocket

def test_open_unsupported_family(fake_bus, monkeypatch) :
    monkeypatch.setattr(socket, "socket", NoInetSocket)
    with pytest.raises(dbus.ConnectError) as info :
        dbus.Connection.open("tcp:host=127.0.0.1,port=9,family=ipv4", private = True)
    #end with
    assert info.value.name == DBUS.ERROR_NO_SERVER
    address = "tcp:host=127.0.0.1,port=9,family=ipv4;%s" % fake_bus.address
    conn = dbus.Connection.open(address, private = True)
    try :
        assert conn.is_authenticated
    finally :
        conn.close()
    #end try
#end test_open_unsupported_family
