#+
# Tests of the wire encoding and decoding of typed values.
#
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import struct

import pytest

import wirebus as dbus
from wirebus import \
    DBUS

def encode(signature, value, byteorder = DBUS.LITTLE_ENDIAN) :
    arg = dbus.Argument(signature, value)
    marshaller = dbus.Marshaller(byteorder)
    marshaller.append(arg.type, arg.value)
    return \
        marshaller.data
#end encode

def decode(signature, data, byteorder = DBUS.LITTLE_ENDIAN) :
    unmarshaller = dbus.Unmarshaller(data, byteorder)
    result = unmarshaller.next(dbus.parse_single_signature(signature))
    assert unmarshaller.remaining == 0
    return \
        result
#end decode

def test_fixed_encodings() :
    assert encode("i", 1) == b"\x01\x00\x00\x00"
    assert encode("i", 1, DBUS.BIG_ENDIAN) == b"\x00\x00\x00\x01"
    assert encode("n", -2) == b"\xfe\xff"
    assert encode("y", 0xAB) == b"\xab"
    assert encode("b", True) == b"\x01\x00\x00\x00"
    assert encode("t", 1 << 40) == struct.pack("<Q", 1 << 40)
    assert encode("d", 1.5) == struct.pack("<d", 1.5)
#end test_fixed_encodings

def test_string_encodings() :
    assert encode("s", "abc") == b"\x03\x00\x00\x00abc\x00"
    assert encode("o", "/a") == b"\x02\x00\x00\x00/a\x00"
    assert encode("g", "ai") == b"\x02ai\x00"
    assert encode("s", "é") == b"\x02\x00\x00\x00\xc3\xa9\x00"
#end test_string_encodings

def test_array_alignment() :
    # length excludes the padding before the first element, which is
    # present even when the array is empty
    assert encode("ai", []) == b"\x00\x00\x00\x00"
    assert encode("at", []) == b"\x00" * 8
    assert encode("at", [1]) == b"\x08\x00\x00\x00" + b"\x00" * 4 + struct.pack("<Q", 1)
    assert encode("ay", b"\x01\x02") == b"\x02\x00\x00\x00\x01\x02"
#end test_array_alignment

def test_struct_alignment() :
    marshaller = dbus.Marshaller(DBUS.LITTLE_ENDIAN)
    marshaller.append(dbus.parse_single_signature("y"), 7)
    marshaller.append(dbus.parse_single_signature("(i)"), (9,))
    assert marshaller.data == b"\x07" + b"\x00" * 7 + b"\x09\x00\x00\x00"
#end test_struct_alignment

def test_variant_encoding() :
    assert encode("v", dbus.Argument("s", "hi")) == b"\x01s\x00\x00\x02\x00\x00\x00hi\x00"
    assert encode("v", ("s", "hi")) == encode("v", dbus.Argument("s", "hi"))
#end test_variant_encoding

def test_dict_encoding() :
    data = encode("a{yy}", {1 : 2})
    # entry aligned to 8 after the length
    assert data == b"\x02\x00\x00\x00" + b"\x00" * 4 + b"\x01\x02"
#end test_dict_encoding

@pytest.mark.parametrize \
  (
    "signature, value",
    [
        ("a{sv}", {"name" : ("s", "x"), "size" : ("u", 42), "nested" : ("av", [("b", True)])}),
        ("a(oas)", [("/a", ["x", "y"]), ("/b", [])]),
        ("(ybnqiuxtd)", (1, True, -3, 4, -5, 6, -7, 8, 9.5)),
        ("aay", [[1, 2, 3], [], [255]]),
        ("a{oa{sv}}", {"/org/x" : {"k" : ("ay", b"\x00\x01")}}),
    ]
  )
def test_decode_inverts_encode(signature, value) :
    arg = dbus.Argument(signature, value)
    for byteorder in (DBUS.LITTLE_ENDIAN, DBUS.BIG_ENDIAN) :
        result = decode(signature, encode(signature, value, byteorder), byteorder)
        assert dbus.Argument._from_wire(arg.type, result) == arg
    #end for
#end test_decode_inverts_encode

def test_decoded_representations() :
    assert isinstance(decode("o", encode("o", "/x")), DBUS.ObjectPath)
    assert isinstance(decode("g", encode("g", "i")), DBUS.Signature)
    assert isinstance(decode("h", encode("h", 3)), DBUS.UnixFD)
    variant = decode("v", encode("v", ("ai", [1, 2])))
    assert isinstance(variant, dbus.Argument)
    assert variant.signature == "ai" and variant.object == [1, 2]
    assert dbus.Argument("a{sv}", {"a" : ("i", 1)}).object == {"a" : 1}
#end test_decoded_representations

@pytest.mark.parametrize \
  (
    "signature, value",
    [
        ("s", "a\0b"),
        ("s", 3),
        ("o", "not/a/path"),
        ("o", "/trailing/"),
        ("g", "a"),
        ("y", 256),
        ("y", -1),
        ("n", 1 << 15),
        ("u", -1),
        ("i", "x"),
        ("b", 2),
        ("d", "1.0"),
        ("ai", [1, "2"]),
        ("a(ii)", [(1,)]),
        ("a{sv}", [1, 2]),
        ("v", 5),
        ("(i)", 5),
    ]
  )
def test_marshal_rejects(signature, value) :
    with pytest.raises(dbus.MarshalError) :
        dbus.Argument(signature, value)
    #end with
#end test_marshal_rejects

def test_marshaller_rejects_unconverted() :
    marshaller = dbus.Marshaller()
    with pytest.raises(dbus.MarshalError) :
        marshaller.append(dbus.parse_single_signature("s"), "nul\0")
    #end with
    with pytest.raises(dbus.MarshalError) :
        marshaller.append(dbus.parse_single_signature("u"), 1.5)
    #end with
    with pytest.raises(dbus.MarshalError) :
        marshaller.append(dbus.parse_single_signature("i"), 1 << 31)
    #end with
#end test_marshaller_rejects_unconverted

def test_array_size_limit(monkeypatch) :
    monkeypatch.setattr(DBUS, "MAXIMUM_ARRAY_LENGTH", 16)
    assert len(encode("ay", bytes(16))) == 20
    with pytest.raises(dbus.MarshalError) as info :
        encode("ay", bytes(17))
    #end with
    assert info.value.name == DBUS.ERROR_LIMITS_EXCEEDED
#end test_array_size_limit

def test_truncated_data() :
    with pytest.raises(dbus.Truncated) :
        decode("u", b"\x01\x00")
    #end with
    with pytest.raises(dbus.Truncated) :
        decode("s", b"\x05\x00\x00\x00ab")
    #end with
    with pytest.raises(dbus.Truncated) :
        decode("ay", struct.pack("<I", 100) + b"\x00" * 4)
    #end with
#end test_truncated_data

def test_malformed_data() :
    bad = \
        [
            ("u", b"\x07\x01\x00\x00\x00\x00\x00\x00", 1), # non-zero padding
            ("b", b"\x02\x00\x00\x00", 0),
            ("s", b"\x02\x00\x00\x00\xff\xfe\x00", 0),
            ("s", b"\x01\x00\x00\x00ab", 0), # not NUL-terminated
            ("s", b"\x03\x00\x00\x00a\x00b\x00", 0),
            ("o", b"\x03\x00\x00\x00a/b\x00", 0),
            ("g", b"\x01z\x00", 0),
            ("v", b"\x02ii\x00", 0),
            ("ay", struct.pack("<I", DBUS.MAXIMUM_ARRAY_LENGTH + 1), 0),
        ]
    for signature, data, offset in bad :
        unmarshaller = dbus.Unmarshaller(data, DBUS.LITTLE_ENDIAN, offset)
        with pytest.raises(dbus.UnmarshalError) as info :
            unmarshaller.next(dbus.parse_single_signature(signature))
        #end with
        assert not isinstance(info.value, dbus.Truncated), signature
    #end for
    with pytest.raises(dbus.UnmarshalError) :
        dbus.Unmarshaller(b"", "X")
    #end with
#end test_malformed_data

def test_value_nesting_limit() :
    data = b"\x01v\x00" * 70 + b"\x01y\x00\x05"
    with pytest.raises(dbus.UnmarshalError) as info :
        decode("v", data)
    #end with
    assert not isinstance(info.value, dbus.Truncated)
    shallow = b"\x01v\x00" * 10 + b"\x01y\x00\x05"
    value = decode("v", shallow)
    for i in range(10) :
        value = value.value
    #end for
    assert value.value == 5
#end test_value_nesting_limit
