import pytest

from teachos.kprint import KernelPanic, kformat, panic


def test_plain_text():
    assert kformat("hart starting\n") == "hart starting\n"


def test_decimal():
    assert kformat("%d items", -42) == "-42 items"
    assert kformat("%d", 0) == "0"


def test_decimal_wraps_to_int32():
    assert kformat("%d", -2**31) == str(-2**31)
    assert kformat("%d", 2**32 + 5) == "5"


def test_hex():
    assert kformat("%x", 255) == "ff"
    assert kformat("%x", -255) == "-" + kformat("%x", 255)


def test_pointer():
    assert kformat("%p", 0x1000) == "0x0000000000001000"
    assert len(kformat("%p", 2**64 - 1)) == 18


def test_string_and_null():
    assert kformat("%s/%s", "a", None) == "a/(null)"


def test_percent_and_unknown():
    assert kformat("100%%") == "100%"
    assert kformat("%q") == "%q"


def test_trailing_percent_dropped():
    assert kformat("abc%") == "abc"


def test_missing_argument():
    with pytest.raises(TypeError):
        kformat("%d %d", 1)


def test_null_format():
    with pytest.raises(KernelPanic):
        kformat(None)


def test_panic():
    with pytest.raises(KernelPanic) as info:
        panic("bget: no buffers")
    assert str(info.value) == "bget: no buffers"