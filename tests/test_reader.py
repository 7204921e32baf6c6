import io
import logging

import pytest

import sas7bdat_layout

from sas7bdat_layout import (
    SAS7BDAT, InvalidMagic, ParseError, ShortReadError, SubheaderDispatcher,
    UnrecognizedSignature,
)

from builders import (
    build_header, build_page, column_attributes_payload, column_name_payload,
    column_size_payload, column_text_payload, entry, format_and_label_payload,
    row_size_payload, simple_payload,
)

TEXT = b'SASYZCRL' + b'AGE' + b'NAME' + b'BEST' + b'Age in years'


def text_ref(word, start=0):
    offset = TEXT.index(word, start)
    return (0, 8 + offset, len(word))


def metadata_page(**kwargs):
    w = kwargs.get('word_width', 4)
    bo = kwargs.get('byte_order', 'little')
    return build_page(0, [
        row_size_payload(w, bo, row_length=16, row_count=3,
                         column_count_p1=2, column_count_p2=0,
                         mix_page_row_count=3, lcs=0, lcp=0),
        column_size_payload(w, bo, column_count=2),
        simple_payload('subheader_counts', w, bo),
        column_text_payload(TEXT, w, bo),
        column_name_payload([text_ref(b'AGE'), text_ref(b'NAME')], w, bo),
        column_attributes_payload([(0, 8, 1), (8, 8, 2)], w, bo),
        format_and_label_payload(text_ref(b'BEST'), text_ref(b'Age in years'),
                                 w, bo),
        format_and_label_payload(word_width=w, byte_order=bo),
        simple_payload('column_list', w, bo),
    ], **kwargs)


def build_file(pages, page_length=4096, header_length=1024, **kwargs):
    header = build_header(page_length=page_length, page_count=len(pages),
                          header_length=header_length, **kwargs)
    return header + b''.join(pages)


def test_single_data_page(monkeypatch):
    calls = []
    monkeypatch.setattr(SubheaderDispatcher, 'dispatch',
                        lambda self, p, payload: calls.append(p))
    data = build_file([build_page(256, page_length=1024)], page_length=1024,
                      encoding_code=20)
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    assert reader.state == SAS7BDAT.STATE_HEADER_PARSED
    page = reader.next_page()
    assert page.page_type == 'data'
    assert page.index == 0
    assert reader.state == SAS7BDAT.STATE_PAGE_READY
    assert reader.next_page() is None
    assert reader.state == SAS7BDAT.STATE_EXHAUSTED
    assert reader.next_page() is None
    assert calls == []
    assert reader.properties.pages_read == 1


def test_no_pages():
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([])))
    assert reader.next_page() is None
    assert list(reader) == []


def test_pages_after_large_header():
    stream = io.BytesIO(build_file(
        [build_page(256), build_page(512)], header_length=8192
    ))
    reader = SAS7BDAT.from_stream(stream)
    assert stream.tell() == 8192
    assert [p.page_type for p in reader] == ['data', 'mix']
    assert stream.tell() == 8192 + 2 * 4096


def test_short_page_is_an_io_error():
    data = build_file([build_page(256)])[:-1]
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    with pytest.raises(ShortReadError):
        reader.next_page()
    assert reader.state == SAS7BDAT.STATE_FAILED
    with pytest.raises(ParseError):
        reader.next_page()


@pytest.mark.parametrize('word_width, byte_order, alignment_offset', [
    (4, 'little', 0),
    (4, 'big', 0),
    (8, 'little', 4),
    (8, 'big', 4),
])
def test_metadata_is_merged(word_width, byte_order, alignment_offset):
    layout = dict(word_width=word_width, byte_order=byte_order,
                  alignment_offset=alignment_offset)
    data = build_file([metadata_page(**layout), build_page(256, **layout)],
                      encoding_code=29, **layout)
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    props = reader.parse_metadata()
    assert props.pages_read == 2
    assert props.row_length == 16
    assert props.row_count == 3
    assert props.column_count == 2
    assert props.mix_page_row_count == 3
    assert props.compression == 'SASYZCRL'
    assert props.column_names == ['AGE', 'NAME']
    assert props.column_types == ['number', 'string']
    assert props.column_formats == ['BEST', '']
    assert props.column_labels == ['Age in years', '']
    columns = props.columns
    assert [c.name for c in columns] == ['AGE', 'NAME']
    assert columns[0].format == 'BEST'
    assert columns[0].label == 'Age in years'
    assert columns[1].length == 8
    assert 'AGE' in str(props)
    assert 'Age in years' in str(props)


def test_parse_metadata_stops_at_first_row_page():
    data = build_file([metadata_page(), build_page(512), build_page(256)])
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    reader.parse_metadata()
    assert reader.current_page_index == 2
    assert reader.next_page().page_type == 'data'
    assert reader.next_page() is None


def test_first_value_wins_across_pages():
    second = build_page(0, [
        row_size_payload(row_length=99, row_count=99, column_count_p1=2),
    ])
    data = build_file([metadata_page(), second])
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    pages = list(reader)
    assert pages[1].row_length == 99
    assert reader.properties.row_length == 16
    assert reader.properties.row_count == 3


def test_column_count_mismatch_does_not_stop_reading(caplog):
    page = build_page(0, [
        row_size_payload(column_count_p1=2, column_count_p2=3),
        column_size_payload(column_count=6),
    ])
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([page])))
    with caplog.at_level(logging.WARNING):
        metadata = reader.next_page()
    assert metadata.column_count_mismatch
    assert reader.properties.column_count == 6
    assert 'column count mismatch' in caplog.text
    assert reader.next_page() is None


def test_error_keeps_earlier_pages():
    bad = build_page(0, [b'\x12\x34\x56\x78' + b'\x00' * 28])
    data = build_file([metadata_page(), bad, build_page(256)])
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    reader.next_page()
    with pytest.raises(UnrecognizedSignature):
        reader.next_page()
    assert reader.properties.pages_read == 1
    assert reader.properties.column_names == ['AGE', 'NAME']


def test_compressed_rows_on_metadata_page():
    row = b'\x12\x34\x56\x78' + b'\x00' * 28
    first = build_page(0, [column_text_payload(b'SASYZCRL')])
    second = build_page(0, [entry(row, compression=4, type_byte=1)])
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([first, second])))
    list(reader)
    assert reader.properties.compression == 'SASYZCRL'
    assert reader.properties.data_subheader_count == 1


def test_bad_column_name_index():
    page = build_page(0, [
        row_size_payload(row_length=16, column_count_p1=1),
        column_text_payload(b'AGE'),
        column_name_payload([(3, 8, 3)]),
    ])
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([page])))
    with pytest.raises(ParseError):
        reader.next_page()
    props = reader.properties
    assert props.row_length is None
    assert props.column_count_p1 is None
    assert props.column_text_blocks == []
    assert props.column_names == []
    assert props.pages_read == 0


def test_name_refs_reach_text_of_earlier_pages():
    first = build_page(0, [column_text_payload(b'AGE')])
    second = build_page(0, [column_name_payload([(0, 8, 3)])])
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([first, second])))
    list(reader)
    assert reader.properties.column_names == ['AGE']


def test_column_count_mismatch_across_pages(caplog):
    first = build_page(0, [
        row_size_payload(column_count_p1=2, column_count_p2=3),
    ])
    second = build_page(0, [column_size_payload(column_count=6)])
    third = build_page(0, [column_size_payload(column_count=6)])
    data = build_file([first, second, third])
    reader = SAS7BDAT.from_stream(io.BytesIO(data))
    with caplog.at_level(logging.WARNING):
        pages = list(reader)
    assert [p.column_count_mismatch for p in pages] == [False] * 3
    assert reader.properties.column_count_mismatch
    assert caplog.text.count('column count mismatch') == 1


def test_column_counts_agree_across_pages(caplog):
    first = build_page(0, [
        row_size_payload(column_count_p1=2, column_count_p2=3),
    ])
    second = build_page(0, [column_size_payload(column_count=5)])
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([first, second])))
    with caplog.at_level(logging.WARNING):
        list(reader)
    assert not reader.properties.column_count_mismatch
    assert 'column count mismatch' not in caplog.text


def test_mismatch_on_one_page_is_logged_once(caplog):
    page = build_page(0, [
        row_size_payload(column_count_p1=2, column_count_p2=3),
        column_size_payload(column_count=6),
    ])
    reader = SAS7BDAT.from_stream(io.BytesIO(build_file([page])))
    with caplog.at_level(logging.WARNING):
        reader.next_page()
    assert reader.properties.column_count_mismatch
    assert caplog.text.count('column count mismatch') == 1


class FailingStream(io.BytesIO):
    fail_after = 1024

    def read(self, size=-1):
        if self.tell() >= self.fail_after:
            raise OSError('device went away')
        return super(FailingStream, self).read(size)


def test_stream_error_halts_decoding():
    reader = SAS7BDAT.from_stream(FailingStream(build_file([build_page(256)])))
    with pytest.raises(OSError):
        reader.next_page()
    assert reader.state == SAS7BDAT.STATE_FAILED
    with pytest.raises(ParseError):
        reader.next_page()


def test_open_from_path(tmp_path):
    path = tmp_path / 'test.sas7bdat'
    path.write_bytes(build_file([metadata_page(), build_page(256)]))
    with SAS7BDAT(str(path)) as f:
        props = f.parse_metadata()
        assert props.filename == 'test.sas7bdat'
        assert props.name == 'TESTDATA'
        assert repr(f) == 'SAS7BDAT file: test.sas7bdat'
    assert f._file.closed


def test_stream_is_left_open():
    stream = io.BytesIO(build_file([build_page(256)]))
    with SAS7BDAT.from_stream(stream) as f:
        list(f)
    assert not stream.closed


def test_bad_file_is_closed(tmp_path, monkeypatch):
    path = tmp_path / 'bad.sas7bdat'
    path.write_bytes(b'\x01' * 2048)
    opened = []
    real_open = open

    def tracking_open(*args, **kwargs):
        f = real_open(*args, **kwargs)
        opened.append(f)
        return f
    monkeypatch.setattr('builtins.open', tracking_open)
    with pytest.raises(InvalidMagic):
        SAS7BDAT(str(path))
    assert opened and opened[0].closed


def test_logger_handlers_are_not_duplicated():
    data = build_file([])
    first = SAS7BDAT.from_stream(io.BytesIO(data), name='dup.sas7bdat')
    second = SAS7BDAT.from_stream(io.BytesIO(data), name='dup.sas7bdat')
    assert first.logger is second.logger
    assert len(second.logger.handlers) == 1


def test_color_emit_prefixes_messages():
    seen = []
    emit = sas7bdat_layout._get_color_emit('f.sas7bdat', seen.append)
    record = logging.LogRecord('x', logging.WARNING, __file__, 1, 'hello',
                               None, None)
    emit(record)
    assert seen[0].msg == '\x1b[33m[f.sas7bdat] hello\x1b[0m'
