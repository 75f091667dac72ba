#!/usr/bin/env python3
"""Unit tests for the canonical byte layouts."""

from __future__ import annotations

import unittest

import base58

from shieldpool.crypto_core import codec
from shieldpool.errors import MalformedInput


class IntegerLayoutTests(unittest.TestCase):
    def test_le64_is_little_endian(self) -> None:
        self.assertEqual(codec.le64(1), b"\x01" + b"\x00" * 7)
        self.assertEqual(codec.le64(0x0102030405060708), bytes([8, 7, 6, 5, 4, 3, 2, 1]))
        self.assertEqual(codec.le64(codec.U64_MAX), b"\xff" * 8)

    def test_le32_is_little_endian(self) -> None:
        self.assertEqual(codec.le32(258), b"\x02\x01\x00\x00")

    def test_out_of_range_integers_are_rejected(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.le64(1 << 64)
        with self.assertRaises(MalformedInput):
            codec.le64(-1)
        with self.assertRaises(MalformedInput):
            codec.le32(1 << 32)

    def test_bool_and_non_int_are_rejected(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.require_u64(True)
        with self.assertRaises(MalformedInput):
            codec.require_u64(1.5)

    def test_read_le64_needs_eight_bytes(self) -> None:
        self.assertEqual(codec.read_le64(codec.le64(123456789)), 123456789)
        with self.assertRaises(MalformedInput):
            codec.read_le64(b"\x00" * 7)


class FixedWidthTests(unittest.TestCase):
    def test_bytes32_accepts_raw_and_hex(self) -> None:
        raw = bytes(range(32))
        self.assertEqual(codec.bytes32(raw), raw)
        self.assertEqual(codec.bytes32(raw.hex()), raw)
        self.assertEqual(codec.bytes32("0x" + raw.hex()), raw)

    def test_bytes32_rejects_wrong_length(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.bytes32(b"\x00" * 31)
        with self.assertRaises(MalformedInput):
            codec.bytes32("ab" * 33)

    def test_from_hex_rejects_garbage(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.from_hex("zz")
        with self.assertRaises(MalformedInput):
            codec.from_hex("abc")

    def test_decode_address_base58_and_hex(self) -> None:
        raw = bytes(range(1, 33))
        b58 = base58.b58encode(raw).decode()
        self.assertEqual(codec.decode_address(b58), raw)
        self.assertEqual(codec.decode_address(raw.hex()), raw)
        self.assertEqual(codec.encode_address(raw), b58)

    def test_decode_address_rejects_31_bytes(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.decode_address(b"\x01" * 31)
        with self.assertRaises(MalformedInput):
            codec.decode_address(base58.b58encode(b"\x01" * 31).decode())

    def test_decode_address_rejects_invalid_base58(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.decode_address("0OIl-not-base58")


class PublicInputsTests(unittest.TestCase):
    def test_layout_is_root_nf_outputs_hash_amount(self) -> None:
        root, nf, oh = b"\x01" * 32, b"\x02" * 32, b"\x03" * 32
        blob = codec.encode_public_inputs(root, nf, oh, 5)
        self.assertEqual(len(blob), codec.PUBLIC_INPUTS_LEN)
        self.assertEqual(blob[:32], root)
        self.assertEqual(blob[32:64], nf)
        self.assertEqual(blob[64:96], oh)
        self.assertEqual(blob[96:], codec.le64(5))
        self.assertEqual(codec.decode_public_inputs(blob), (root, nf, oh, 5))

    def test_wrong_lengths_are_rejected(self) -> None:
        with self.assertRaises(MalformedInput):
            codec.decode_public_inputs(b"\x00" * 103)
        with self.assertRaises(MalformedInput):
            codec.require_proof(b"\x00" * 259)
        self.assertEqual(len(codec.require_proof(b"\x00" * codec.PROOF_LEN)), 260)

    def test_encode_rejects_short_components(self) -> None:
        ok = b"\x11" * 32
        with self.assertRaises(MalformedInput):
            codec.encode_public_inputs(b"\x11" * 31, ok, ok, 1)
        with self.assertRaises(MalformedInput):
            codec.encode_public_inputs(ok, ok, b"\x11" * 33, 1)
        with self.assertRaises(MalformedInput):
            codec.encode_public_inputs(ok, ok, ok, 1 << 64)


if __name__ == "__main__":
    unittest.main()
