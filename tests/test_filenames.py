from draft_images import first_free_sequence, generate_filename, parse_sequence_number

from conftest import ITEM_ID


def test_generate_filename_is_deterministic_and_lowercases_extension():
    first = generate_filename("item-abc123", 5, "photo.JPEG")
    assert first == "Draft-abc123-05.jpeg"
    assert generate_filename("item-abc123", 5, "photo.JPEG") == first


def test_generate_filename_uses_last_six_characters_of_item_id():
    assert generate_filename(ITEM_ID, 1, "a.png") == "Draft-440000-01.png"


def test_generate_filename_defaults_to_jpg():
    assert generate_filename(ITEM_ID, 3, "photo") == "Draft-440000-03.jpg"
    assert generate_filename(ITEM_ID, 3, "") == "Draft-440000-03.jpg"


def test_generate_filename_takes_extension_after_last_dot():
    assert generate_filename(ITEM_ID, 12, "holiday.final.PNG") == "Draft-440000-12.png"


def test_generate_filename_never_keeps_path_or_odd_characters():
    assert generate_filename(ITEM_ID, 1, "x.png/evil") == "Draft-440000-01.jpg"
    assert generate_filename(ITEM_ID, 1, "../../photo.PNG") == "Draft-440000-01.png"
    assert generate_filename(ITEM_ID, 1, "photo.p ng") == "Draft-440000-01.jpg"
    assert generate_filename(ITEM_ID, 1, "photo.") == "Draft-440000-01.jpg"


def test_generate_filename_widens_past_99():
    assert generate_filename(ITEM_ID, 100, "a.gif") == "Draft-440000-100.gif"


def test_parse_sequence_number():
    assert parse_sequence_number("Draft-440000-07.png") == 7
    assert parse_sequence_number("Draft-440000-100.png") == 100
    assert parse_sequence_number("Draft-440000-7.png") is None
    assert parse_sequence_number("IMG_0001.jpg") is None
    assert parse_sequence_number("newImages-1700000000000-1.png") is None
    assert parse_sequence_number("") is None


def test_first_free_sequence_fills_gaps():
    assert first_free_sequence([]) == 1
    assert first_free_sequence(["Draft-440000-01.png", "Draft-440000-02.jpg", "Draft-440000-03.png"]) == 4
    assert first_free_sequence(["Draft-440000-01.png", "Draft-440000-03.png"]) == 2
    assert first_free_sequence(["Draft-440000-02.png"]) == 1


def test_first_free_sequence_ignores_foreign_filenames():
    names = ["legacy.jpg", "Draft-440000-01.png", "draft-1700000000000.png"]
    assert first_free_sequence(names) == 2
