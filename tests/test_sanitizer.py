import unittest
from pathlib import Path

from soundboard import storage


class SanitizePathSegmentTests(unittest.TestCase):
    def test_keeps_ordinary_names(self):
        self.assertEqual(storage.sanitize_path_segment("Door Slam (take 2)"), "Door Slam (take 2)")
        self.assertEqual(storage.sanitize_path_segment("fx"), "fx")
        self.assertEqual(storage.sanitize_path_segment("ñandú-ß"), "ñandú-ß")

    def test_strips_separators_and_illegal_characters(self):
        samples = [
            "../../etc/passwd",
            "..\\..\\windows\\system32",
            'a<b>c:d"e|f?g*h',
            "tab\tnew\nline\x00nul\x7f",
            "/leading/slash",
        ]
        for sample in samples:
            result = storage.sanitize_path_segment(sample)
            self.assertTrue(result, sample)
            for forbidden in '/\\<>:"|?*\x00\t\n\x7f':
                self.assertNotIn(forbidden, result, sample)

        self.assertEqual(storage.sanitize_path_segment("a/b\\c"), "abc")
        self.assertEqual(storage.sanitize_path_segment("../../etc/passwd"), "....etcpasswd")

    def test_empty_or_dot_only_results_fall_back(self):
        for sample in [None, "", "   ", "///", "\\\\", ".", "..", "../..", " . . ", "\x01\x02", "?*"]:
            self.assertEqual(storage.sanitize_path_segment(sample), "file", repr(sample))

    def test_output_is_always_a_single_safe_segment(self):
        for sample in ["..", "a/../b", "x\\..\\y", "", "...", "C:\\temp"]:
            segment = storage.sanitize_path_segment(sample)
            relative = storage.compose_relative_path(segment, segment, "a" * 32, ".mp3")
            self.assertTrue(storage.is_safe_relative_path(relative), relative)
            self.assertEqual(len(relative.split("/")), 2)

    def test_long_segments_are_cut_on_character_boundaries(self):
        self.assertEqual(storage.sanitize_path_segment("a" * 300), "a" * 255)

        cut = storage.sanitize_path_segment("声" * 100, max_bytes=200)
        self.assertEqual(cut, "声" * 66)
        self.assertLessEqual(len(cut.encode("utf-8")), 200)

        self.assertEqual(storage.sanitize_path_segment("." * 300 + "x", max_bytes=10), "file")

    def test_stem_budget_leaves_room_for_id_and_temp_suffix(self):
        for ext in [".mp3", ".flac"]:
            stem = storage.sanitize_path_segment("声" * 200, max_bytes=storage.max_stem_bytes(ext))
            temp_name = f"{stem}-{'a' * 32}{ext}{storage.TEMP_SUFFIX}"
            self.assertLessEqual(len(temp_name.encode("utf-8")), storage.MAX_SEGMENT_BYTES, ext)


class RelativePathTests(unittest.TestCase):
    def test_compose_embeds_id_in_file_name(self):
        media_id = "0123456789abcdef0123456789abcdef"
        self.assertEqual(
            storage.compose_relative_path("fx", "clip", media_id, ".mp3"),
            f"fx/clip-{media_id}.mp3",
        )

    def test_safe_relative_paths(self):
        self.assertTrue(storage.is_safe_relative_path("fx/clip.mp3"))
        self.assertTrue(storage.is_safe_relative_path("clip.mp3"))
        self.assertTrue(storage.is_safe_relative_path("fx/..clip.mp3"))
        for unsafe in ["", "..", "../x", "fx/./clip.mp3", "/abs.mp3", "C:clip.mp3", "a\\b", None]:
            self.assertFalse(storage.is_safe_relative_path(unsafe), repr(unsafe))

    def test_resolve_media_path_stays_under_root(self):
        root = Path("/srv/media")
        resolved = storage.resolve_media_path(root, "fx/clip.mp3")
        self.assertEqual(resolved, root.resolve() / "fx" / "clip.mp3")
        with self.assertRaises(ValueError):
            storage.resolve_media_path(root, "../escape.mp3")


class UploadNamingTests(unittest.TestCase):
    def test_split_upload_filename(self):
        self.assertEqual(storage.split_upload_filename("Clip.MP3"), ("Clip", ".mp3"))
        self.assertEqual(storage.split_upload_filename("archive.tar.flac"), ("archive.tar", ".flac"))
        self.assertEqual(storage.split_upload_filename("C:\\Users\\me\\boom.wav"), ("boom", ".wav"))
        self.assertEqual(storage.split_upload_filename("noext"), ("noext", ""))
        self.assertEqual(storage.split_upload_filename(".mp3"), ("", ".mp3"))
        self.assertEqual(storage.split_upload_filename("fx/.WAV"), ("", ".wav"))
        self.assertEqual(storage.split_upload_filename("..mp3"), (".", ".mp3"))
        self.assertEqual(storage.split_upload_filename(".."), ("..", ""))

    def test_allowed_extensions(self):
        for ext in [".mp3", ".wav", ".ogg", ".aac", ".m4a", ".flac", ".MP3"]:
            self.assertTrue(storage.is_allowed_extension(ext), ext)
        for ext in [".exe", ".mp4", "", ".txt"]:
            self.assertFalse(storage.is_allowed_extension(ext), ext)

    def test_mime_type_lookup(self):
        self.assertEqual(storage.mime_type_for(Path("a.mp3")), "audio/mpeg")
        self.assertEqual(storage.mime_type_for(Path("a.WAV")), "audio/wav")
        self.assertEqual(storage.mime_type_for(Path("a.m4a")), "audio/mp4")
        self.assertEqual(storage.mime_type_for(Path("a.bin")), "application/octet-stream")

    def test_media_id_validation(self):
        self.assertTrue(storage.is_valid_media_id(storage.generate_media_id()))
        self.assertFalse(storage.is_valid_media_id("A" * 32))
        self.assertFalse(storage.is_valid_media_id("a" * 31))
        self.assertFalse(storage.is_valid_media_id(""))


if __name__ == "__main__":
    unittest.main()
