#!/usr/bin/env python
"""
This module decodes the binary layout of sas7bdat files using pure Python.
No SAS software required!

The header is parsed once, then pages are decoded one at a time: the
sub-headers of every metadata page are classified by their signature bytes
and the structural facts needed to read rows (row length, row count,
column counts, compression) are collected.
"""
import codecs
import logging
import os
import platform
import struct
import sys
from datetime import datetime, timedelta

__all__ = [
    'SAS7BDAT', 'SASHeader', 'SASProperties', 'PageMetadata', 'PageDecoder',
    'SubheaderDispatcher', 'SubheaderPointer', 'WordReader', 'Column',
    'ParseError', 'InvalidError', 'InvalidMagic', 'InvalidSecondaryMagic',
    'InvalidHeaderLength', 'InvalidPageType', 'InvalidCompressionCode',
    'SubheaderSizeMismatch', 'UnknownEncodingCode', 'UnrecognizedSignature',
    'TruncatedError', 'ShortReadError', 'decode_text', 'resolve_codec',
    'read_exact', 'match_signature',
]

DEFAULT_ENCODING = 'latin-1'
SAS_EPOCH = datetime(1960, 1, 1)

ROW_SIZE_SUBHEADER_INDEX = 'row_size'
COLUMN_SIZE_SUBHEADER_INDEX = 'column_size'
SUBHEADER_COUNTS_SUBHEADER_INDEX = 'subheader_counts'
COLUMN_TEXT_SUBHEADER_INDEX = 'column_text'
COLUMN_NAME_SUBHEADER_INDEX = 'column_name'
COLUMN_ATTRIBUTES_SUBHEADER_INDEX = 'column_attributes'
FORMAT_AND_LABEL_SUBHEADER_INDEX = 'format_and_label'
COLUMN_LIST_SUBHEADER_INDEX = 'column_list'
DATA_SUBHEADER_INDEX = 'data'

PAGE_META_TYPE = 'meta'
PAGE_AMD_TYPE = 'amd'
PAGE_MIX_TYPE = 'mix'
PAGE_DATA_TYPE = 'data'

UNCOMPRESSED = 'uncompressed'
TRUNCATED = 'truncated'
RLE = 'rle'

RLE_COMPRESSION = 'SASYZCRL'
RDC_COMPRESSION = 'SASYZCR2'
COMPRESSION_LITERALS = (RLE_COMPRESSION, RDC_COMPRESSION)


def _debug(t, v, tb):
    if hasattr(sys, 'ps1') or not sys.stderr.isatty():
        sys.__excepthook__(t, v, tb)
    else:
        import pdb
        import traceback
        traceback.print_exception(t, v, tb)
        print()
        pdb.pm()
        os._exit(1)


def _get_color_emit(prefix, fn):
    # This doesn't work on Windows since Windows doesn't support
    # the ansi escape characters
    def _new(handler):
        levelno = handler.levelno
        if levelno >= logging.CRITICAL:
            color = '\x1b[31m'  # red
        elif levelno >= logging.ERROR:
            color = '\x1b[31m'  # red
        elif levelno >= logging.WARNING:
            color = '\x1b[33m'  # yellow
        elif levelno >= logging.INFO:
            color = '\x1b[32m'  # green or normal
        elif levelno >= logging.DEBUG:
            color = '\x1b[35m'  # pink
        else:
            color = '\x1b[0m'   # normal
        handler.msg = '%s[%s] %s%s' % (color, prefix, handler.msg, '\x1b[0m')
        return fn(handler)
    return _new


class ParseError(Exception):
    pass


class InvalidError(ParseError):
    """
    A structural field holds a value the format does not allow.
    """
    def __init__(self, name, value=None):
        self.name = name
        self.value = value
        msg = 'invalid %s' % name
        if value is not None:
            msg = '%s: %r' % (msg, value)
        super(InvalidError, self).__init__(msg)


class InvalidMagic(InvalidError):
    def __init__(self, value=None):
        super(InvalidMagic, self).__init__('magic number', value)


class InvalidSecondaryMagic(InvalidError):
    def __init__(self, value=None):
        super(InvalidSecondaryMagic, self).__init__('SAS FILE', value)


class InvalidHeaderLength(InvalidError):
    def __init__(self, value=None):
        super(InvalidHeaderLength, self).__init__('header length', value)


class InvalidPageType(InvalidError):
    def __init__(self, value=None):
        super(InvalidPageType, self).__init__('page type', value)


class InvalidCompressionCode(InvalidError):
    def __init__(self, value=None):
        super(InvalidCompressionCode, self).__init__(
            'sub header compression', value
        )


class SubheaderSizeMismatch(InvalidError):
    pass


class UnknownEncodingCode(InvalidError):
    def __init__(self, value=None):
        super(UnknownEncodingCode, self).__init__('encoding code', value)


class UnrecognizedSignature(ParseError):
    def __init__(self, signature, offset=None):
        self.signature = signature
        self.offset = offset
        super(UnrecognizedSignature, self).__init__(
            'unrecognized sub header signature %r at page offset %s' %
            (signature, offset)
        )


class TruncatedError(ParseError):
    def __init__(self, needed, available):
        self.needed = needed
        self.available = available
        super(TruncatedError, self).__init__(
            'truncated data: needed %s bytes, got %s' % (needed, available)
        )


class ShortReadError(ParseError, IOError):
    def __init__(self, needed, available):
        self.needed = needed
        self.available = available
        super(ShortReadError, self).__init__(
            'failed to read %s bytes from sas7bdat file (read %s)' %
            (needed, available)
        )


def read_exact(stream, length):
    """
    read_exact(stream, length) -> bytes

    Read exactly length bytes from stream or raise ShortReadError.
    """
    chunks = []
    remaining = length
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    data = b''.join(chunks)
    if len(data) != length:
        raise ShortReadError(length, len(data))
    return data


# SAS names which python's codec registry does not know
SAS_CODEC_ALIASES = {
    'wlatin1': 'cp1252',
    'wlatin2': 'cp1250',
    'wcyrillic': 'cp1251',
    'ebcdic870': 'cp870',
}


def resolve_codec(label, default=DEFAULT_ENCODING, logger=None):
    """
    resolve_codec(label[, default[, logger]]) -> codec name

    Labels python cannot resolve fall back to the default codec.
    """
    try:
        return codecs.lookup(SAS_CODEC_ALIASES.get(label, label)).name
    except LookupError:
        if logger is not None:
            logger.warning('unknown codec %r, falling back to %s',
                           label, default)
        return codecs.lookup(default).name


def decode_text(raw, encoding, logger=None):
    """
    decode_text(raw, encoding[, logger]) -> str

    Best effort decoding of text embedded in the file. Undecodable bytes
    are replaced, never raised.
    """
    raw = bytes(raw)
    try:
        text = raw.decode(encoding)
    except UnicodeDecodeError as e:
        if logger is not None:
            logger.warning('could not decode %r as %s (%s)', raw, encoding, e)
        text = raw.decode(encoding, 'replace')
    return text.strip('\x00').strip()


class WordReader(object):
    """
    Reads integers of a fixed byte order from the start of a byte slice.
    The native reads are 4 or 8 bytes wide depending on word_width.
    """
    BYTE_ORDER_PREFIXES = {'little': '<', 'big': '>'}
    WORD_WIDTHS = (4, 8)

    def __init__(self, byte_order, word_width):
        if byte_order not in self.BYTE_ORDER_PREFIXES:
            raise ValueError('unknown byte order: %r' % byte_order)
        if word_width not in self.WORD_WIDTHS:
            raise ValueError('unknown word width: %r' % word_width)
        self.byte_order = byte_order
        self.word_width = word_width
        self._prefix = self.BYTE_ORDER_PREFIXES[byte_order]

    def __repr__(self):
        return 'WordReader(%r, %r)' % (self.byte_order, self.word_width)

    def _read(self, fmt, size, buf):
        if len(buf) < size:
            raise TruncatedError(size, len(buf))
        return struct.unpack(self._prefix + fmt, bytes(buf[:size]))[0]

    def read_i16(self, buf):
        return self._read('h', 2, buf)

    def read_u16(self, buf):
        return self._read('H', 2, buf)

    def read_i32(self, buf):
        return self._read('i', 4, buf)

    def read_u32(self, buf):
        return self._read('I', 4, buf)

    def read_i64(self, buf):
        return self._read('q', 8, buf)

    def read_u64(self, buf):
        return self._read('Q', 8, buf)

    def read_f64(self, buf):
        return self._read('d', 8, buf)

    def read_native_int(self, buf):
        if self.word_width == 8:
            return self.read_i64(buf)
        return self.read_i32(buf)

    def read_native_uint(self, buf):
        if self.word_width == 8:
            return self.read_u64(buf)
        return self.read_u32(buf)


class SASHeader(object):
    """
    The fixed part of a sas7bdat file: the structural flags found in the
    preamble and the page geometry. Build it with SASHeader.from_stream().
    """
    MAGIC = b'\x00' * 12 + \
        b'\xc2\xea\x81\x60\xb3\x14\x11\xcf\xbd\x92\x08\x00'\
        b'\x09\xc7\x31\x8c\x18\x1f\x10\x11'
    BLOCK_LENGTH = 1024
    HEADER_LENGTHS = (1024, 8192)
    FLAG_CHECKER_VALUE = 0x33
    U64_OFFSET = 32
    ALIGN_OFFSET = 35
    ALIGN_VALUE = 4
    ENDIANNESS_OFFSET = 37
    LITTLE_ENDIAN_VALUE = 0x01
    PLATFORM_OFFSET = 39
    PLATFORM_LENGTH = 1
    ENCODING_OFFSET = 70
    SAS_FILE = b'SAS FILE'
    SAS_FILE_OFFSET = 84
    DATASET_OFFSET = 92
    DATASET_LENGTH = 64
    FILE_TYPE_OFFSET = 156
    FILE_TYPE_LENGTH = 8
    DATE_CREATED_OFFSET = 164
    DATE_CREATED_LENGTH = 8
    DATE_MODIFIED_OFFSET = 172
    DATE_MODIFIED_LENGTH = 8
    HEADER_SIZE_OFFSET = 196
    PAGE_SIZE_OFFSET = 200
    PAGE_COUNT_OFFSET = 204
    SAS_RELEASE_OFFSET = 216
    SAS_RELEASE_LENGTH = 8
    SAS_SERVER_TYPE_OFFSET = 224
    SAS_SERVER_TYPE_LENGTH = 16
    OS_VERSION_NUMBER_OFFSET = 240
    OS_VERSION_NUMBER_LENGTH = 16
    OS_MAKER_OFFSET = 256
    OS_MAKER_LENGTH = 16
    OS_NAME_OFFSET = 272
    OS_NAME_LENGTH = 16
    PLATFORMS = {b'1': 'unix', b'2': 'windows'}
    ENCODING_NAMES = {
        29: 'latin1',
        20: 'utf-8',
        33: 'cyrillic',
        60: 'wlatin2',
        61: 'wcyrillic',
        62: 'wlatin1',
        90: 'ebcdic870',
    }

    def __init__(self, word_width, byte_order, alignment_offset, encoding,
                 encoding_label=None):
        self.word_width = word_width
        self.byte_order = byte_order
        self.alignment_offset = alignment_offset
        self.encoding = encoding
        self.encoding_label = encoding_label
        self.reader = WordReader(byte_order, word_width)
        self.header_length = None
        self.page_length = None
        self.page_count = None
        self.platform = None
        self.name = None
        self.file_type = None
        self.date_created = None
        self.date_modified = None
        self.sas_release = None
        self.server_type = None
        self.os_type = None
        self.os_name = None

    def __repr__(self):
        return 'SASHeader(word_width=%s, byte_order=%s, alignment_offset=%s,'\
               ' encoding=%s, page_length=%s, page_count=%s)' % (
                   self.word_width, self.byte_order, self.alignment_offset,
                   self.encoding, self.page_length, self.page_count)

    @property
    def u64(self):
        return self.word_width == 8

    @classmethod
    def check_magic_number(cls, buf):
        return bytes(buf[:len(cls.MAGIC)]) == cls.MAGIC

    @classmethod
    def parse_preamble(cls, buf, logger=None,
                       default_encoding=DEFAULT_ENCODING):
        """
        parse_preamble(buf[, logger[, default_encoding]]) -> SASHeader

        Check both magic strings and read the structural flags. The page
        geometry is left unset.
        """
        if not cls.check_magic_number(buf):
            raise InvalidMagic(bytes(buf[:len(cls.MAGIC)]))
        needed = cls.FILE_TYPE_OFFSET + cls.FILE_TYPE_LENGTH
        if len(buf) < needed:
            raise TruncatedError(needed, len(buf))
        word_width = 8 if buf[cls.U64_OFFSET] == cls.FLAG_CHECKER_VALUE else 4
        alignment_offset = 0
        if buf[cls.ALIGN_OFFSET] == cls.FLAG_CHECKER_VALUE:
            alignment_offset = cls.ALIGN_VALUE
        # TODO: verify 0x01 == little endian against big endian sample files
        byte_order = 'little'\
            if buf[cls.ENDIANNESS_OFFSET] == cls.LITTLE_ENDIAN_VALUE else 'big'
        marker = bytes(buf[cls.SAS_FILE_OFFSET:
                           cls.SAS_FILE_OFFSET + len(cls.SAS_FILE)])
        if marker != cls.SAS_FILE:
            raise InvalidSecondaryMagic(marker)
        code = buf[cls.ENCODING_OFFSET]
        label = cls.ENCODING_NAMES.get(code)
        if label is None:
            raise UnknownEncodingCode(code)
        encoding = resolve_codec(label, default_encoding, logger)

        header = cls(word_width, byte_order, alignment_offset, encoding, label)
        header.name = decode_text(
            buf[cls.DATASET_OFFSET:cls.DATASET_OFFSET + cls.DATASET_LENGTH],
            encoding, logger
        )
        header.file_type = decode_text(
            buf[cls.FILE_TYPE_OFFSET:
                cls.FILE_TYPE_OFFSET + cls.FILE_TYPE_LENGTH],
            encoding, logger
        )
        return header

    @classmethod
    def from_stream(cls, stream, logger=None,
                    default_encoding=DEFAULT_ENCODING):
        """
        from_stream(stream[, logger[, default_encoding]]) -> SASHeader

        Consume the whole header from stream, leaving it at the first page.
        """
        buf = read_exact(stream, cls.BLOCK_LENGTH)
        header = cls.parse_preamble(buf, logger, default_encoding)
        header._parse_geometry(buf, stream)
        header._parse_diagnostics(buf)
        if logger is not None:
            logger.debug('%r', header)
        return header

    def _parse_geometry(self, buf, stream):
        reader = self.reader
        align = self.alignment_offset
        header_length = reader.read_i32(buf[self.HEADER_SIZE_OFFSET + align:])
        if header_length not in self.HEADER_LENGTHS:
            raise InvalidHeaderLength(header_length)
        self.header_length = header_length
        if header_length > len(buf):
            # the rest of the large header carries nothing we need
            read_exact(stream, header_length - len(buf))
        self.page_length = reader.read_i32(buf[self.PAGE_SIZE_OFFSET + align:])
        self.page_count = reader.read_native_int(
            buf[self.PAGE_COUNT_OFFSET + align:]
        )

    def _read_string(self, buf, offset, length):
        return decode_text(buf[offset:offset + length], self.encoding)

    def _read_timestamp(self, buf, offset):
        # Timestamp is epoch 01/01/1960
        try:
            return SAS_EPOCH + timedelta(
                seconds=self.reader.read_f64(buf[offset:])
            )
        except (OverflowError, ValueError):
            return None

    def _parse_diagnostics(self, buf):
        align1 = self.alignment_offset
        total_align = align1 + (self.ALIGN_VALUE if self.u64 else 0)
        self.platform = self.PLATFORMS.get(
            bytes(buf[self.PLATFORM_OFFSET:
                      self.PLATFORM_OFFSET + self.PLATFORM_LENGTH]),
            'unknown'
        )
        self.date_created = self._read_timestamp(
            buf, self.DATE_CREATED_OFFSET + align1
        )
        self.date_modified = self._read_timestamp(
            buf, self.DATE_MODIFIED_OFFSET + align1
        )
        self.sas_release = self._read_string(
            buf, self.SAS_RELEASE_OFFSET + total_align,
            self.SAS_RELEASE_LENGTH
        )
        self.server_type = self._read_string(
            buf, self.SAS_SERVER_TYPE_OFFSET + total_align,
            self.SAS_SERVER_TYPE_LENGTH
        )
        self.os_type = self._read_string(
            buf, self.OS_VERSION_NUMBER_OFFSET + total_align,
            self.OS_VERSION_NUMBER_LENGTH
        )
        self.os_name = self._read_string(
            buf, self.OS_NAME_OFFSET + total_align, self.OS_NAME_LENGTH
        ) or self._read_string(
            buf, self.OS_MAKER_OFFSET + total_align, self.OS_MAKER_LENGTH
        )


class Column(object):
    def __init__(self, col_id, name, label, col_format, col_type, length):
        self.col_id = col_id
        self.name = name
        self.label = label
        self.format = col_format
        self.type = col_type
        self.length = length

    def __repr__(self):
        return self.name


class SubheaderPointer(object):
    def __init__(self, offset=None, length=None, compression=None,
                 p_type=None):
        self.offset = offset
        self.length = length
        self.compression = compression
        self.type = p_type

    def __repr__(self):
        return 'SubheaderPointer(offset=%s, length=%s, compression=%s, '\
               'type=%s)' % (self.offset, self.length, self.compression,
                             self.type)

    def has_content(self):
        return self.length > 0 and self.compression != TRUNCATED


class ColumnCountCheck(object):
    column_count_p1 = None
    column_count_p2 = None
    column_count = None
    column_count_mismatch = False

    def check_column_count(self, logger=None):
        """
        Compare the declared column count with the sum of the two partial
        counts of the row size sub header. A mismatch is only recorded.
        """
        if self.column_count is None or self.column_count_p1 is None:
            return True
        expected = self.column_count_p1 + (self.column_count_p2 or 0)
        if expected != self.column_count:
            self.column_count_mismatch = True
            if logger is not None:
                logger.warning(
                    'column count mismatch: %s + %s != %s',
                    self.column_count_p1, self.column_count_p2,
                    self.column_count
                )
            return False
        return True


class PageMetadata(ColumnCountCheck):
    """
    Structural facts collected while decoding one page.
    """
    def __init__(self):
        self.index = None
        self.page_type = None
        self.block_count = None
        self.subheader_count = 0
        self.subheader_kinds = []
        self.row_length = None
        self.row_count = None
        self.column_count_p1 = None
        self.column_count_p2 = None
        self.column_count = None
        self.column_count_mismatch = False
        self.mix_page_row_count = None
        self.lcs = None
        self.lcp = None
        self.compression = None
        self.column_text_blocks = []
        self.column_name_refs = []
        self.column_data_offsets = []
        self.column_data_lengths = []
        self.column_types = []
        self.column_format_refs = []
        self.data_subheader_pointers = []

    def __repr__(self):
        return 'PageMetadata(index=%s, page_type=%s, block_count=%s, '\
               'subheaders=%s)' % (self.index, self.page_type,
                                   self.block_count, self.subheader_kinds)


class ProcessingSubheader(object):
    ROW_LENGTH_OFFSET_MULTIPLIER = 5
    ROW_COUNT_OFFSET_MULTIPLIER = 6
    COLUMN_COUNT_P1_OFFSET_MULTIPLIER = 9
    COLUMN_COUNT_P2_OFFSET_MULTIPLIER = 10
    ROW_COUNT_ON_MIX_PAGE_OFFSET_MULTIPLIER = 15
    LCS_OFFSET_X86 = 354
    LCP_OFFSET_X86 = 378
    LCS_OFFSET_X64 = 682
    LCP_OFFSET_X64 = 706
    COLUMN_NAME_POINTER_LENGTH = 8
    COLUMN_NAME_TEXT_SUBHEADER_OFFSET = 0
    COLUMN_NAME_OFFSET_OFFSET = 2
    COLUMN_NAME_LENGTH_OFFSET = 4
    COLUMN_DATA_OFFSET_OFFSET = 8
    COLUMN_DATA_LENGTH_OFFSET = 8
    COLUMN_TYPE_OFFSET = 14
    COLUMN_FORMAT_TEXT_SUBHEADER_INDEX_OFFSET = 22
    COLUMN_FORMAT_OFFSET_OFFSET = 24
    COLUMN_FORMAT_LENGTH_OFFSET = 26
    COLUMN_LABEL_TEXT_SUBHEADER_INDEX_OFFSET = 28
    COLUMN_LABEL_OFFSET_OFFSET = 30
    COLUMN_LABEL_LENGTH_OFFSET = 32

    def __init__(self, header, metadata, logger=None):
        self.header = header
        self.metadata = metadata
        self.logger = logger or logging.getLogger(__name__)
        self.reader = header.reader
        self.int_length = header.word_width

    def process_subheader(self, payload):
        raise NotImplementedError

    def _read_int(self, payload, offset):
        return self.reader.read_native_int(payload[offset:])

    def _read_short(self, payload, offset):
        return self.reader.read_u16(payload[offset:])


class FixedSizeSubheader(ProcessingSubheader):
    """
    Row size and column size sub headers always span 480 bytes in 32 bit
    files and 808 bytes in 64 bit files.
    """
    SUBHEADER_LENGTH_X86 = 480
    SUBHEADER_LENGTH_X64 = 808
    NAME = None

    def check_length(self, payload):
        expected = self.SUBHEADER_LENGTH_X64 if self.int_length == 8 else\
            self.SUBHEADER_LENGTH_X86
        if len(payload) != expected:
            raise SubheaderSizeMismatch(self.NAME, len(payload))


class RowSizeSubheader(FixedSizeSubheader):
    NAME = 'row size sub header'

    def process_subheader(self, payload):
        self.check_length(payload)
        int_len = self.int_length
        m = self.metadata
        m.row_length = self._read_int(
            payload, self.ROW_LENGTH_OFFSET_MULTIPLIER * int_len
        )
        m.row_count = self._read_int(
            payload, self.ROW_COUNT_OFFSET_MULTIPLIER * int_len
        )
        m.column_count_p1 = self._read_int(
            payload, self.COLUMN_COUNT_P1_OFFSET_MULTIPLIER * int_len
        )
        m.column_count_p2 = self._read_int(
            payload, self.COLUMN_COUNT_P2_OFFSET_MULTIPLIER * int_len
        )
        m.mix_page_row_count = self._read_int(
            payload, self.ROW_COUNT_ON_MIX_PAGE_OFFSET_MULTIPLIER * int_len
        )
        if int_len == 8:
            lcs_offset, lcp_offset = self.LCS_OFFSET_X64, self.LCP_OFFSET_X64
        else:
            lcs_offset, lcp_offset = self.LCS_OFFSET_X86, self.LCP_OFFSET_X86
        m.lcs = self._read_short(payload, lcs_offset)
        m.lcp = self._read_short(payload, lcp_offset)
        m.check_column_count(self.logger)


class ColumnSizeSubheader(FixedSizeSubheader):
    NAME = 'column size sub header'

    def process_subheader(self, payload):
        self.check_length(payload)
        self.metadata.column_count = self._read_int(payload, self.int_length)
        self.metadata.check_column_count(self.logger)


class SubheaderCountsSubheader(ProcessingSubheader):
    def process_subheader(self, payload):
        pass  # Nothing structural in here


class ColumnTextSubheader(ProcessingSubheader):
    def process_subheader(self, payload):
        offset = self.int_length
        text_block_size = self._read_short(payload, offset)
        block = bytes(payload[offset:offset + text_block_size])
        self.metadata.column_text_blocks.append(block)
        if self.metadata.compression is None:
            for literal in COMPRESSION_LITERALS:
                if literal.encode('ascii') in block:
                    self.metadata.compression = literal
                    break


class ColumnNameSubheader(ProcessingSubheader):
    def process_subheader(self, payload):
        int_len = self.int_length
        pointer_len = self.COLUMN_NAME_POINTER_LENGTH
        column_name_pointers_count = (
            (len(payload) - 2 * int_len - 12) // pointer_len
        )
        for i in range(column_name_pointers_count):
            base = int_len + pointer_len * (i + 1)
            self.metadata.column_name_refs.append(tuple(
                self._read_short(payload, base + offset) for offset in (
                    self.COLUMN_NAME_TEXT_SUBHEADER_OFFSET,
                    self.COLUMN_NAME_OFFSET_OFFSET,
                    self.COLUMN_NAME_LENGTH_OFFSET,
                )
            ))


class ColumnAttributesSubheader(ProcessingSubheader):
    def process_subheader(self, payload):
        int_len = self.int_length
        m = self.metadata
        column_attributes_vectors_count = (
            (len(payload) - 2 * int_len - 12) // (int_len + 8)
        )
        for i in range(column_attributes_vectors_count):
            step = i * (int_len + 8)
            m.column_data_offsets.append(self._read_int(
                payload, int_len + self.COLUMN_DATA_OFFSET_OFFSET + step
            ))
            m.column_data_lengths.append(self.reader.read_i32(
                payload[2 * int_len + self.COLUMN_DATA_LENGTH_OFFSET + step:]
            ))
            ctype = payload[2 * int_len + self.COLUMN_TYPE_OFFSET + step]
            m.column_types.append('number' if ctype == 1 else 'string')


class FormatAndLabelSubheader(ProcessingSubheader):
    def process_subheader(self, payload):
        base = 3 * self.int_length
        self.metadata.column_format_refs.append(tuple(
            self._read_short(payload, base + offset) for offset in (
                self.COLUMN_FORMAT_TEXT_SUBHEADER_INDEX_OFFSET,
                self.COLUMN_FORMAT_OFFSET_OFFSET,
                self.COLUMN_FORMAT_LENGTH_OFFSET,
                self.COLUMN_LABEL_TEXT_SUBHEADER_INDEX_OFFSET,
                self.COLUMN_LABEL_OFFSET_OFFSET,
                self.COLUMN_LABEL_LENGTH_OFFSET,
            )
        ))


class ColumnListSubheader(ProcessingSubheader):
    def process_subheader(self, payload):
        pass  # Column order only, nothing structural


# Subheader signatures, 32 and 64 bit, little and big endian
SUBHEADER_SIGNATURES = (
    (b'\xF7\xF7\xF7\xF7', ROW_SIZE_SUBHEADER_INDEX),
    (b'\x00\x00\x00\x00\xF7\xF7\xF7\xF7', ROW_SIZE_SUBHEADER_INDEX),
    (b'\xF7\xF7\xF7\xF7\x00\x00\x00\x00', ROW_SIZE_SUBHEADER_INDEX),
    (b'\xF7\xF7\xF7\xF7\xFF\xFF\xFB\xFE', ROW_SIZE_SUBHEADER_INDEX),
    (b'\xF6\xF6\xF6\xF6', COLUMN_SIZE_SUBHEADER_INDEX),
    (b'\x00\x00\x00\x00\xF6\xF6\xF6\xF6', COLUMN_SIZE_SUBHEADER_INDEX),
    (b'\xF6\xF6\xF6\xF6\x00\x00\x00\x00', COLUMN_SIZE_SUBHEADER_INDEX),
    (b'\xF6\xF6\xF6\xF6\xFF\xFF\xFB\xFE', COLUMN_SIZE_SUBHEADER_INDEX),
    (b'\x00\xFC\xFF\xFF', SUBHEADER_COUNTS_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFC\x00', SUBHEADER_COUNTS_SUBHEADER_INDEX),
    (b'\x00\xFC\xFF\xFF\xFF\xFF\xFF\xFF', SUBHEADER_COUNTS_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF\xFF\xFF\xFC\x00', SUBHEADER_COUNTS_SUBHEADER_INDEX),
    (b'\xFD\xFF\xFF\xFF', COLUMN_TEXT_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFD', COLUMN_TEXT_SUBHEADER_INDEX),
    (b'\xFD\xFF\xFF\xFF\xFF\xFF\xFF\xFF', COLUMN_TEXT_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF\xFF\xFF\xFF\xFD', COLUMN_TEXT_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF', COLUMN_NAME_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF\xFF\xFF\xFF\xFF', COLUMN_NAME_SUBHEADER_INDEX),
    (b'\xFC\xFF\xFF\xFF', COLUMN_ATTRIBUTES_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFC', COLUMN_ATTRIBUTES_SUBHEADER_INDEX),
    (b'\xFC\xFF\xFF\xFF\xFF\xFF\xFF\xFF', COLUMN_ATTRIBUTES_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF\xFF\xFF\xFF\xFC', COLUMN_ATTRIBUTES_SUBHEADER_INDEX),
    (b'\xFE\xFB\xFF\xFF', FORMAT_AND_LABEL_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFB\xFE', FORMAT_AND_LABEL_SUBHEADER_INDEX),
    (b'\xFE\xFB\xFF\xFF\xFF\xFF\xFF\xFF', FORMAT_AND_LABEL_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF\xFF\xFF\xFB\xFE', FORMAT_AND_LABEL_SUBHEADER_INDEX),
    (b'\xFE\xFF\xFF\xFF', COLUMN_LIST_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFE', COLUMN_LIST_SUBHEADER_INDEX),
    (b'\xFE\xFF\xFF\xFF\xFF\xFF\xFF\xFF', COLUMN_LIST_SUBHEADER_INDEX),
    (b'\xFF\xFF\xFF\xFF\xFF\xFF\xFF\xFE', COLUMN_LIST_SUBHEADER_INDEX),
)
SUBHEADER_SIGNATURE_TO_INDEX = dict(SUBHEADER_SIGNATURES)
SUBHEADER_INDEX_TO_CLASS = {
    ROW_SIZE_SUBHEADER_INDEX: RowSizeSubheader,
    COLUMN_SIZE_SUBHEADER_INDEX: ColumnSizeSubheader,
    SUBHEADER_COUNTS_SUBHEADER_INDEX: SubheaderCountsSubheader,
    COLUMN_TEXT_SUBHEADER_INDEX: ColumnTextSubheader,
    COLUMN_NAME_SUBHEADER_INDEX: ColumnNameSubheader,
    COLUMN_ATTRIBUTES_SUBHEADER_INDEX: ColumnAttributesSubheader,
    FORMAT_AND_LABEL_SUBHEADER_INDEX: FormatAndLabelSubheader,
    COLUMN_LIST_SUBHEADER_INDEX: ColumnListSubheader,
}


def match_signature(payload, word_width):
    """
    match_signature(payload, word_width) -> sub header index or None

    The signature is the first word of the payload, 4 bytes in 32 bit
    files and 8 bytes in 64 bit files.
    """
    if len(payload) < word_width:
        raise TruncatedError(word_width, len(payload))
    return SUBHEADER_SIGNATURE_TO_INDEX.get(bytes(payload[:word_width]))


class SubheaderDispatcher(object):
    """
    Classifies live sub headers of one page and hands them to the matching
    processor, which records its findings in the page metadata.
    """
    COMPRESSED_SUBHEADER_TYPE = 1

    def __init__(self, header, metadata, logger=None):
        self.header = header
        self.metadata = metadata
        self.logger = logger or logging.getLogger(__name__)

    def classify(self, pointer, payload):
        index = match_signature(payload, self.header.word_width)
        if index is not None:
            return index
        # compressed files store rows as sub headers without a signature
        if self.metadata.compression is not None and\
                pointer.compression in (UNCOMPRESSED, RLE) and\
                pointer.type == self.COMPRESSED_SUBHEADER_TYPE:
            return DATA_SUBHEADER_INDEX
        raise UnrecognizedSignature(
            bytes(payload[:self.header.word_width]), pointer.offset
        )

    def dispatch(self, pointer, payload):
        index = self.classify(pointer, payload)
        self.logger.debug('sub header %s at %s (%s bytes)',
                          index, pointer.offset, pointer.length)
        self.metadata.subheader_kinds.append(index)
        if index == DATA_SUBHEADER_INDEX:
            self.metadata.data_subheader_pointers.append(pointer)
        else:
            cls = SUBHEADER_INDEX_TO_CLASS[index]
            cls(self.header, self.metadata, self.logger).process_subheader(
                payload
            )
        return index


class PageDecoder(object):
    """
    Decodes one page buffer into a PageMetadata record.
    """
    PAGE_BIT_OFFSET_X86 = 16
    PAGE_BIT_OFFSET_X64 = 32
    SUBHEADER_POINTER_LENGTH_X86 = 12
    SUBHEADER_POINTER_LENGTH_X64 = 24
    PAGE_TYPE_OFFSET = 0
    BLOCK_COUNT_OFFSET = 2
    SUBHEADER_COUNT_OFFSET = 4
    SUBHEADER_POINTERS_OFFSET = 8
    PAGE_TYPES = {
        0: PAGE_META_TYPE,
        1024: PAGE_AMD_TYPE,
        512: PAGE_MIX_TYPE,
        640: PAGE_MIX_TYPE,
        256: PAGE_DATA_TYPE,
    }
    SUBHEADER_COMPRESSIONS = {
        0: UNCOMPRESSED,
        1: TRUNCATED,
        4: RLE,
    }

    def __init__(self, header, logger=None):
        self.header = header
        self.reader = header.reader
        self.logger = logger or logging.getLogger(__name__)

    @property
    def page_bit_offset(self):
        return self.PAGE_BIT_OFFSET_X64\
            if self.header.alignment_offset == SASHeader.ALIGN_VALUE else\
            self.PAGE_BIT_OFFSET_X86

    @property
    def subheader_pointer_length(self):
        return self.SUBHEADER_POINTER_LENGTH_X64 if self.header.u64 else\
            self.SUBHEADER_POINTER_LENGTH_X86

    @classmethod
    def page_type(cls, code):
        try:
            return cls.PAGE_TYPES[code]
        except KeyError:
            raise InvalidPageType(code)

    @classmethod
    def subheader_compression(cls, code):
        try:
            return cls.SUBHEADER_COMPRESSIONS[code]
        except KeyError:
            raise InvalidCompressionCode(code)

    def read_subheader_pointer(self, page, index):
        int_len = self.header.word_width
        offset = (
            self.page_bit_offset + self.SUBHEADER_POINTERS_OFFSET +
            self.subheader_pointer_length * index
        )
        end = offset + 2 * int_len + 2
        if end > len(page):
            raise TruncatedError(end, len(page))
        return SubheaderPointer(
            self.reader.read_native_uint(page[offset:]),
            self.reader.read_native_uint(page[offset + int_len:]),
            self.subheader_compression(page[offset + 2 * int_len]),
            page[offset + 2 * int_len + 1],
        )

    def decode(self, page, compression=None):
        """
        decode(page[, compression]) -> PageMetadata

        compression is the compression literal already known for the file.
        """
        metadata = PageMetadata()
        metadata.compression = compression
        bit_offset = self.page_bit_offset
        metadata.page_type = self.page_type(
            self.reader.read_u16(page[bit_offset + self.PAGE_TYPE_OFFSET:])
        )
        metadata.block_count = self.reader.read_u16(
            page[bit_offset + self.BLOCK_COUNT_OFFSET:]
        )
        if metadata.page_type == PAGE_DATA_TYPE:
            return metadata

        metadata.subheader_count = self.reader.read_u16(
            page[bit_offset + self.SUBHEADER_COUNT_OFFSET:]
        )
        dispatcher = SubheaderDispatcher(self.header, metadata, self.logger)
        for i in range(metadata.subheader_count):
            pointer = self.read_subheader_pointer(page, i)
            if not pointer.has_content():
                continue
            end = pointer.offset + pointer.length
            if end > len(page):
                raise TruncatedError(end, len(page))
            dispatcher.dispatch(pointer, page[pointer.offset:end])
        return metadata


class SASProperties(ColumnCountCheck):
    """
    Everything known about a file: the header diagnostics plus the page
    metadata merged so far.
    """
    MERGED_FIELDS = (
        'row_length', 'row_count', 'column_count_p1', 'column_count_p2',
        'mix_page_row_count', 'lcs', 'lcp', 'column_count', 'compression',
    )

    def __init__(self, header):
        self.u64 = header.u64
        self.endianess = header.byte_order
        self.encoding = header.encoding
        self.platform = header.platform
        self.name = header.name
        self.file_type = header.file_type
        self.date_created = header.date_created
        self.date_modified = header.date_modified
        self.header_length = header.header_length
        self.page_length = header.page_length
        self.page_count = header.page_count
        self.sas_release = header.sas_release
        self.server_type = header.server_type
        self.os_type = header.os_type
        self.os_name = header.os_name
        self.filename = None
        self.pages_read = 0
        self.data_subheader_count = 0
        self.column_count_mismatch = False
        for attr in self.MERGED_FIELDS:
            setattr(self, attr, None)
        self.column_text_blocks = []
        self.column_names = []
        self.column_data_offsets = []
        self.column_data_lengths = []
        self.column_types = []
        self.column_formats = []
        self.column_labels = []

    def __repr__(self):
        cols = [['Num', 'Name', 'Type', 'Length', 'Format', 'Label']]
        align = ['>', '<', '<', '>', '<', '<']
        col_width = [len(x) for x in cols[0]]
        for i, col in enumerate(self.columns, 1):
            tmp = [i, col.name, col.type, col.length,
                   col.format, col.label]
            cols.append(tmp)
            for j, val in enumerate(tmp):
                col_width[j] = max(col_width[j], len(str(val)))
        rows = [' '.join('{0:{1}}'.format(x, col_width[i])
                         for i, x in enumerate(cols[0])),
                ' '.join('-' * col_width[i]
                         for i in range(len(align)))]
        for row in cols[1:]:
            rows.append(' '.join(
                '{0:{1}{2}}'.format(str(x), align[i], col_width[i])
                for i, x in enumerate(row))
            )
        cols = '\n'.join(rows)
        hdr = 'Header:\n%s' % '\n'.join(
            ['\t%s: %s' % (k, v)
             for k, v in sorted(self.__dict__.items())
             if not isinstance(v, list)]
        )
        return '%s\n\nContents of dataset "%s":\n%s\n' % (
            hdr, self.name, cols
        )

    @property
    def columns(self):
        return [
            Column(i, name, label, col_format, col_type, length)
            for i, (name, label, col_format, col_type, length) in enumerate(
                zip(self.column_names, self.column_labels,
                    self.column_formats, self.column_types,
                    self.column_data_lengths)
            )
        ]

    def _column_text(self, blocks, idx, start, length, logger, clamp=False):
        if length == 0:
            return ''
        if clamp:
            # min used to prevent incorrect data which appear in some files
            idx = min(idx, len(blocks) - 1)
        if not 0 <= idx < len(blocks):
            raise InvalidError('column text index', idx)
        block = blocks[idx]
        return decode_text(block[start:start + length], self.encoding, logger)

    def update(self, page, logger=None):
        """
        Merge the metadata of one decoded page. Scalars keep the first value
        seen, column lists grow in page order.

        Text references are resolved before anything is merged, so a page
        that raises leaves the properties as they were.
        """
        blocks = self.column_text_blocks + page.column_text_blocks
        names = [self._column_text(blocks, idx, start, length, logger)
                 for idx, start, length in page.column_name_refs]
        formats = []
        labels = []
        for refs in page.column_format_refs:
            formats.append(
                self._column_text(blocks, refs[0], refs[1], refs[2], logger,
                                  True)
            )
            labels.append(
                self._column_text(blocks, refs[3], refs[4], refs[5], logger,
                                  True)
            )

        for attr in self.MERGED_FIELDS:
            if getattr(self, attr) is None:
                setattr(self, attr, getattr(page, attr))
        self.column_text_blocks = blocks
        self.column_names.extend(names)
        self.column_data_offsets.extend(page.column_data_offsets)
        self.column_data_lengths.extend(page.column_data_lengths)
        self.column_types.extend(page.column_types)
        self.column_formats.extend(formats)
        self.column_labels.extend(labels)
        self.data_subheader_count += len(page.data_subheader_pointers)
        self.pages_read += 1

        if not self.column_count_mismatch:
            # the page itself already warned when both counts were on it
            self.check_column_count(
                None if page.column_count_mismatch else logger
            )


class SAS7BDAT(object):
    """
    SAS7BDAT(path[, log_level[, default_encoding[, stream]]]) -> \
SAS7BDAT object

    Open a SAS7BDAT file and parse its header. The log level are standard
    logging levels (defaults to logging.INFO). Pages are decoded one at a
    time with next_page(), or all metadata pages at once with
    parse_metadata().

    Pass an already open binary stream to read from it instead of path;
    see SAS7BDAT.from_stream.
    """
    STATE_HEADER_PARSED = 'header_parsed'
    STATE_PAGE_READY = 'page_ready'
    STATE_EXHAUSTED = 'exhausted'
    STATE_FAILED = 'failed'

    def __init__(self, path, log_level=logging.INFO,
                 default_encoding=DEFAULT_ENCODING, stream=None):
        """
        x.__init__(...) initializes x; see help(type(x)) for signature
        """
        if log_level == logging.DEBUG:
            sys.excepthook = _debug
        self.path = path
        self.logger = self._make_logger(level=log_level)
        self._owns_file = stream is None
        self._file = open(self.path, 'rb') if stream is None else stream
        try:
            self.header = SASHeader.from_stream(
                self._file, self.logger, default_encoding
            )
        except Exception:
            self.close()
            raise
        self.properties = SASProperties(self.header)
        self.properties.filename = os.path.basename(self.path)
        self.page_decoder = PageDecoder(self.header, self.logger)
        self.current_page_index = 0
        self.state = self.STATE_HEADER_PARSED

    @classmethod
    def from_stream(cls, stream, name='<stream>', **kwargs):
        """
        from_stream(stream[, name[, log_level[, default_encoding]]]) -> \
SAS7BDAT object

        The stream must be positioned at the start of the file. It is left
        open by close().
        """
        return cls(name, stream=stream, **kwargs)

    def __repr__(self):
        """
        x.__repr__() <==> repr(x)
        """
        return 'SAS7BDAT file: %s' % os.path.basename(self.path)

    def __enter__(self):
        """
        __enter__() -> self.
        """
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """
        __exit__(*excinfo) -> None. Closes the file.
        """
        self.close()

    def __iter__(self):
        """
        x.__iter__() <==> iter(x)
        """
        return iter(self.next_page, None)

    def close(self):
        """
        close() -> None. Close the file if this object opened it.

        close() may be called more than once without error.
        """
        if self._owns_file:
            self._file.close()

    def _make_logger(self, level=logging.INFO):
        """
        Create a custom logger with the specified properties.
        """
        logger = logging.getLogger(self.path)
        logger.setLevel(level)
        if logger.handlers:
            return logger
        fmt = '%(message)s'
        streamHandler = logging.StreamHandler()
        if platform.system() != 'Windows':
            streamHandler.emit = _get_color_emit(
                os.path.basename(self.path),
                streamHandler.emit
            )
        else:
            fmt = '[%s] %%(message)s' % os.path.basename(self.path)
        formatter = logging.Formatter(fmt, '%y-%m-%d %H:%M:%S')
        streamHandler.setFormatter(formatter)
        logger.addHandler(streamHandler)
        return logger

    def next_page(self):
        """
        next_page() -> PageMetadata or None

        Read and decode the next page. Returns None once every page of the
        file has been read, and on every call after that.
        """
        if self.state == self.STATE_FAILED:
            raise ParseError('decoding stopped at page %s after an error' %
                             self.current_page_index)
        if self.current_page_index >= self.header.page_count:
            self.state = self.STATE_EXHAUSTED
            return None
        try:
            page = read_exact(self._file, self.header.page_length)
            metadata = self.page_decoder.decode(
                page, compression=self.properties.compression
            )
            metadata.index = self.current_page_index
            self.properties.update(metadata, self.logger)
        except (ParseError, IOError):
            self.state = self.STATE_FAILED
            raise
        self.current_page_index += 1
        self.state = self.STATE_PAGE_READY
        self.logger.debug('page %s: %s', metadata.index, metadata)
        return metadata

    def parse_metadata(self):
        """
        parse_metadata() -> SASProperties

        Decode pages until the first page holding rows (or the end of the
        file) and return the merged properties.
        """
        for page in self:
            if page.page_type in (PAGE_MIX_TYPE, PAGE_DATA_TYPE):
                break
        self.logger.debug('\n%s', str(self.properties))
        return self.properties
