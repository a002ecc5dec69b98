"""Tests for format detection and the STL / glTF decoders.

None of these need Blender.
"""

from __future__ import annotations

import json
import os
import unittest
from unittest import mock

import numpy as np
from PIL import Image

from render3d.errors import (
    MissingBlobError,
    NonFatalRenderError,
    ParseError,
    TextureDecodeError,
    UnsupportedFormatError,
)
from render3d.formats import DecodedModel, ModelFormat, decode_model, detect_format
from render3d.formats.gltf import decode_gltf, load_package, split_glb
from render3d.formats.sources import BlobTable, MemoryByteSource, blob_id
from render3d.formats.stl import decode_stl, is_binary_stl
from render3d.formats.textures import PendingImage, decode_image, decode_images
from render3d.scene_graph import (
    DEFAULT_GLTF_MATERIAL,
    DEFAULT_STL_MATERIAL,
    TextureSource,
    TextureSourceKind,
)
from render3d.testing.fixtures import (
    GltfBuilder,
    cube_glb,
    cube_triangles,
    png_bytes,
    stl_ascii,
    stl_binary,
)

RED = (255, 0, 0, 255)


def _decode_glb(data: bytes, files=None):
    return decode_gltf(data, "/models", MemoryByteSource(files or {}), texture_workers=2)


class TestDetectFormat(unittest.TestCase):
    def test_known_extensions(self):
        self.assertIs(detect_format("cube.stl"), ModelFormat.TRIANGLE_MESH)
        self.assertIs(detect_format("/a/b/CUBE.STL"), ModelFormat.TRIANGLE_MESH)
        self.assertIs(detect_format("scene.glb"), ModelFormat.SCENE_PACKAGE)
        self.assertIs(detect_format("scene.gltf"), ModelFormat.SCENE_PACKAGE)

    def test_unsupported_extension(self):
        with self.assertRaises(UnsupportedFormatError) as cm:
            detect_format("model.obj")
        self.assertEqual(cm.exception.extension, ".obj")
        self.assertIn("STL or glTF/GLB", str(cm.exception))
        self.assertTrue(cm.exception.fatal)

    def test_missing_extension(self):
        with self.assertRaises(UnsupportedFormatError):
            detect_format("model")


class TestStl(unittest.TestCase):
    def test_binary_cube(self):
        data = stl_binary(cube_triangles())
        self.assertTrue(is_binary_stl(data))
        root = decode_stl(data, name="cube")
        self.assertEqual(root.name, "cube")
        geometry = root.mesh.geometry
        self.assertEqual(geometry.triangle_count, 12)
        self.assertEqual(geometry.vertex_count, 36)
        np.testing.assert_array_equal(geometry.indices, np.arange(36, dtype=np.uint32))
        self.assertIs(root.mesh.material, DEFAULT_STL_MATERIAL)
        self.assertEqual(root.mesh.material.metalness, 0.3)
        self.assertEqual(root.mesh.material.roughness, 0.7)

    def test_facet_count_gives_three_indices_per_facet(self):
        for n in (1, 5, 40):
            triangles = np.random.default_rng(n).normal(size=(n, 3, 3)).astype(np.float32)
            geometry = decode_stl(stl_binary(triangles)).mesh.geometry
            self.assertEqual(len(geometry.indices), 3 * n)

    def test_zero_normals_recomputed(self):
        geometry = decode_stl(stl_binary(cube_triangles())).mesh.geometry
        lengths = np.linalg.norm(geometry.normals, axis=1)
        np.testing.assert_allclose(lengths, 1.0, rtol=1e-5)
        # first facet lies on the -z face
        np.testing.assert_allclose(geometry.normals[0], [0.0, 0.0, -1.0], atol=1e-6)

    def test_file_normals_kept(self):
        triangles = cube_triangles()[:1]
        normals = np.array([[0.0, 1.0, 0.0]], dtype=np.float32)
        geometry = decode_stl(stl_binary(triangles, normals)).mesh.geometry
        np.testing.assert_array_equal(geometry.normals[0], [0.0, 1.0, 0.0])

    def test_ascii_matches_binary(self):
        triangles = cube_triangles(size=2.0, offset=(1.0, 0.0, -3.0))
        from_binary = decode_stl(stl_binary(triangles)).mesh.geometry
        from_ascii = decode_stl(stl_ascii(triangles)).mesh.geometry
        self.assertEqual(from_ascii.triangle_count, from_binary.triangle_count)
        np.testing.assert_allclose(from_ascii.positions, from_binary.positions, atol=1e-5)

    def test_geometry_is_read_only(self):
        geometry = decode_stl(stl_binary(cube_triangles())).mesh.geometry
        with self.assertRaises(ValueError):
            geometry.positions[0, 0] = 5.0

    def test_garbage_is_parse_error(self):
        with self.assertRaises(ParseError):
            decode_stl(b"\x00\x01garbage that is not an stl file")

    def test_truncated_binary_is_parse_error(self):
        data = stl_binary(cube_triangles())[:-10]
        with self.assertRaisesRegex(ParseError, "truncated"):
            decode_stl(data)

    def test_binary_with_trailing_bytes(self):
        data = stl_binary(cube_triangles()) + b"\x00\x00"
        self.assertTrue(is_binary_stl(data))
        geometry = decode_stl(data).mesh.geometry
        self.assertEqual(geometry.triangle_count, 12)
        np.testing.assert_allclose(
            geometry.positions, cube_triangles().reshape(-1, 3), atol=1e-6
        )

    def test_binary_with_solid_header(self):
        data = stl_binary(cube_triangles(), header=b"solid exported by a binary writer")
        self.assertTrue(is_binary_stl(data))
        self.assertEqual(decode_stl(data).mesh.geometry.triangle_count, 12)

    def test_ascii_is_not_binary(self):
        data = stl_ascii(cube_triangles())
        self.assertFalse(is_binary_stl(data))
        self.assertEqual(decode_stl(data).mesh.geometry.triangle_count, 12)


class TestDecodeModel(unittest.TestCase):
    def test_stl_dispatch(self):
        decoded = decode_model(stl_binary(cube_triangles()), ModelFormat.TRIANGLE_MESH, name="box")
        self.assertIsInstance(decoded, DecodedModel)
        self.assertIs(decoded.fmt, ModelFormat.TRIANGLE_MESH)
        self.assertEqual(decoded.root.name, "box")
        self.assertEqual(decoded.warnings, [])

    def test_gltf_dispatch(self):
        decoded = decode_model(cube_glb(), ModelFormat.SCENE_PACKAGE, source=MemoryByteSource())
        self.assertIs(decoded.fmt, ModelFormat.SCENE_PACKAGE)
        self.assertEqual(len(decoded.root.mesh_nodes()), 1)


class TestSources(unittest.TestCase):
    def test_blob_id(self):
        self.assertEqual(blob_id("blob:nodedata:1234"), "1234")
        self.assertEqual(blob_id("blob:1234"), "1234")

    def test_blob_table_slices_payload(self):
        payload = b"0123456789"
        table = BlobTable.from_buffers(
            [{"uri": "blob:nodedata:a", "byteOffset": 2, "byteLength": 3},
             {"uri": "data:,x"},
             {"uri": "blob:nodedata:far", "byteOffset": 8, "byteLength": 30}],
            payload,
        )
        self.assertEqual(table.resolve("blob:nodedata:a"), b"234")
        self.assertEqual(len(table), 1)
        self.assertNotIn("far", table)
        with self.assertRaises(MissingBlobError) as cm:
            table.resolve("blob:nodedata:far")
        self.assertEqual(cm.exception.blob_id, "far")
        self.assertFalse(cm.exception.fatal)

    def test_memory_source_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            MemoryByteSource({"a.bin": b"x"}).read_bytes("b.bin")


class TestTextures(unittest.TestCase):
    def test_errors_pass_through_and_images_decode(self):
        missing = MissingBlobError("7")
        pending = {
            0: PendingImage(TextureSource(TextureSourceKind.DATA_URI, "a"), data=png_bytes(3, 2, RED)),
            1: PendingImage(TextureSource(TextureSourceKind.BLOB, "7"), error=missing),
            2: PendingImage(TextureSource(TextureSourceKind.BUFFER_VIEW, "c"), data=b"not an image"),
        }
        outcomes = decode_images(pending, max_workers=3)
        self.assertEqual((outcomes[0].width, outcomes[0].height), (3, 2))
        self.assertEqual(outcomes[0].pixels[:4], bytes(RED))
        self.assertIs(outcomes[1], missing)
        self.assertIsInstance(outcomes[2], TextureDecodeError)

    def test_oversized_image_is_decode_error(self):
        source = TextureSource(TextureSourceKind.BUFFER_VIEW, "huge")
        with mock.patch.object(Image, "MAX_IMAGE_PIXELS", 4):
            with self.assertRaises(TextureDecodeError) as cm:
                decode_image(png_bytes(3, 3, RED), source)
        self.assertFalse(cm.exception.fatal)
        self.assertEqual(decode_image(png_bytes(3, 3, RED), source).width, 3)


class TestGlbContainer(unittest.TestCase):
    def test_split(self):
        json_chunk, bin_chunk = split_glb(cube_glb())
        self.assertEqual(json.loads(json_chunk)["asset"]["version"], "2.0")
        self.assertIsNotNone(bin_chunk)

    def test_bad_magic(self):
        with self.assertRaises(ParseError):
            split_glb(b"nope" + b"\0" * 20)

    def test_truncated_container(self):
        with self.assertRaises(ParseError):
            load_package(cube_glb()[:40])

    def test_invalid_json(self):
        with self.assertRaises(ParseError):
            load_package(b"{not json")

    def test_unsupported_version(self):
        with self.assertRaises(ParseError):
            load_package(json.dumps({"asset": {"version": "1.0"}}).encode())

    def test_unsupported_required_extension(self):
        doc = {"asset": {"version": "2.0"}, "extensionsRequired": ["KHR_draco_mesh_compression"]}
        with self.assertRaises(ParseError):
            load_package(json.dumps(doc).encode())


class TestGltfGeometry(unittest.TestCase):
    def test_cube(self):
        result = _decode_glb(cube_glb())
        meshes = result.root.mesh_nodes()
        self.assertEqual(len(meshes), 1)
        self.assertEqual(meshes[0].name, "cube")
        geometry = meshes[0].mesh.geometry
        self.assertEqual(geometry.vertex_count, 8)
        self.assertEqual(geometry.triangle_count, 12)
        self.assertIs(meshes[0].mesh.material, DEFAULT_GLTF_MATERIAL)
        self.assertEqual(result.warnings, [])

    def test_synthesized_root_holds_scene_roots(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        builder.add_node(name="a", mesh=0, translation=[1.0, 2.0, 3.0])
        builder.add_node(name="b")
        root = _decode_glb(builder.glb()).root
        self.assertEqual([c.name for c in root.children], ["a", "b"])
        self.assertEqual(root.children[0].translation, (1.0, 2.0, 3.0))
        self.assertIsNone(root.children[1].mesh)

    def test_shared_mesh_decodes_geometry_once(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        builder.add_node(name="left", mesh=0, translation=[-1.0, 0.0, 0.0])
        builder.add_node(name="right", mesh=0, translation=[1.0, 0.0, 0.0])
        left, right = _decode_glb(builder.glb()).root.mesh_nodes()
        self.assertEqual(left.mesh.geometry.triangle_count, 12)
        self.assertIs(left.mesh.geometry, right.mesh.geometry)

    def test_non_indexed_primitive_gets_sequential_indices(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        builder.add_node(mesh=0)
        geometry = _decode_glb(builder.glb()).root.mesh_nodes()[0].mesh.geometry
        np.testing.assert_array_equal(geometry.indices, np.arange(36))

    def test_triangle_strip_and_fan(self):
        quad = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 0]], dtype=np.float32)
        builder = GltfBuilder()
        builder.add_mesh(quad, indices=np.arange(4), mode=5)
        builder.add_mesh(quad, indices=np.arange(4), mode=6)
        builder.add_node(name="strip", mesh=0)
        builder.add_node(name="fan", mesh=1)
        strip, fan = (n.mesh.geometry for n in _decode_glb(builder.glb()).root.mesh_nodes())
        np.testing.assert_array_equal(strip.indices, [0, 1, 2, 1, 3, 2])
        np.testing.assert_array_equal(fan.indices, [1, 2, 0, 2, 3, 0])

    def test_line_primitive_skipped(self):
        builder = GltfBuilder()
        builder.add_mesh(np.zeros((2, 3), np.float32), mode=1)
        builder.add_node(mesh=0)
        with self.assertLogs("render3d.formats.gltf", level="WARNING"):
            result = _decode_glb(builder.glb())
        self.assertEqual(result.root.mesh_nodes(), [])

    def test_multiple_primitives_become_children(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        first = builder.doc["meshes"][0]["primitives"][0]
        builder.doc["meshes"][0]["primitives"].append(dict(first))
        builder.add_node(name="pair", mesh=0)
        node = _decode_glb(builder.glb()).root.children[0]
        self.assertIsNone(node.mesh)
        self.assertEqual([c.name for c in node.children], ["pair_primitive0", "pair_primitive1"])

    def test_node_cycle_is_parse_error(self):
        builder = GltfBuilder()
        builder.add_node(name="a", children=[1])
        builder.add_node(root=False, name="b", children=[0])
        with self.assertRaises(ParseError):
            _decode_glb(builder.glb())

    def test_accessor_out_of_range_is_parse_error(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        builder.doc["accessors"][0]["count"] = 10_000
        builder.add_node(mesh=0)
        with self.assertRaises(ParseError):
            _decode_glb(builder.glb())

    def test_geometry_in_blob_buffer(self):
        positions = cube_triangles().reshape(-1, 3)
        builder = GltfBuilder()
        buffer = builder.add_blob_buffer("geo", positions.tobytes())
        view = builder.add_view(positions.tobytes(), buffer=buffer)
        builder.add_accessor(positions, "VEC3", view=view)
        builder.doc["meshes"].append({"primitives": [{"attributes": {"POSITION": 0}}]})
        builder.add_node(mesh=0)
        geometry = _decode_glb(builder.glb()).root.mesh_nodes()[0].mesh.geometry
        np.testing.assert_allclose(geometry.positions, positions)

    def test_blob_offsets_count_from_file_start(self):
        image = png_bytes(2, 2, RED)
        builder = GltfBuilder()
        builder.add_blob_buffer("tex", image)
        data = builder.glb()
        json_chunk, bin_chunk = split_glb(data)
        buffer = json.loads(json_chunk)["buffers"][1]
        start, end = buffer["byteOffset"], buffer["byteOffset"] + buffer["byteLength"]
        self.assertGreaterEqual(start, 28 + len(json_chunk))
        self.assertEqual(data[start:end], image)
        self.assertNotEqual(bin_chunk[start:end], image)

        package = load_package(data)
        self.assertIs(package.payload, data)
        table = BlobTable.from_buffers(package.document["buffers"], package.payload)
        self.assertEqual(table.resolve("blob:nodedata:tex"), image)

    def test_missing_geometry_blob_skips_primitive(self):
        positions = cube_triangles().reshape(-1, 3)
        builder = GltfBuilder()
        builder.doc["buffers"].append(
            {"uri": "blob:nodedata:gone", "byteOffset": 1 << 20, "byteLength": len(positions.tobytes())}
        )
        builder.doc["bufferViews"].append(
            {"buffer": 1, "byteOffset": 0, "byteLength": len(positions.tobytes())}
        )
        builder.add_accessor(positions, "VEC3", view=0)
        builder.doc["meshes"].append({"primitives": [{"attributes": {"POSITION": 0}}]})
        builder.add_node(mesh=0)
        result = _decode_glb(builder.glb())
        self.assertEqual(result.root.mesh_nodes(), [])
        self.assertEqual(len(result.warnings), 1)
        self.assertIsInstance(result.warnings[0], MissingBlobError)
        self.assertEqual(result.warnings[0].blob_id, "gone")

    def test_document_form_with_side_buffer(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        builder.add_node(mesh=0)
        files = {os.path.join("/models", "scene.bin"): bytes(builder.bin)}
        result = _decode_glb(builder.gltf_json(), files)
        self.assertEqual(result.root.mesh_nodes()[0].mesh.geometry.triangle_count, 12)

    def test_missing_side_buffer_is_parse_error(self):
        builder = GltfBuilder()
        builder.add_mesh(cube_triangles().reshape(-1, 3))
        builder.add_node(mesh=0)
        with self.assertRaises(ParseError):
            _decode_glb(builder.gltf_json())


class TestGltfMaterials(unittest.TestCase):
    def _textured(self, image_kind: str, payload: bytes = b"", **material):
        builder = GltfBuilder()
        if image_kind == "view":
            image = builder.add_image_from_view(payload)
        elif image_kind == "blob":
            builder.add_blob_buffer("42", payload)
            image = builder.add_image_uri("blob:nodedata:42")
        elif image_kind == "dangling":
            image = builder.add_image_uri("blob:nodedata:9999")
        else:
            image = builder.add_image_uri(image_kind)
        mat = builder.add_material(image=image, name="skin", **material)
        builder.add_mesh(
            cube_triangles().reshape(-1, 3),
            uvs=np.zeros((36, 2), np.float32),
            material=mat,
        )
        builder.add_node(mesh=0)
        return _decode_glb(builder.glb())

    def test_factors(self):
        result = self._textured(
            "view", png_bytes(), base_color=[0.5, 0.25, 1.0, 1.0],
            metallicFactor=0.1, roughnessFactor=0.6,
        )
        material = result.root.mesh_nodes()[0].mesh.material
        self.assertEqual(material.name, "skin")
        self.assertEqual(material.base_color, (0.5, 0.25, 1.0, 1.0))
        self.assertAlmostEqual(material.metalness, 0.1)
        self.assertAlmostEqual(material.roughness, 0.6)

    def test_buffer_view_texture(self):
        result = self._textured("view", png_bytes(4, 2, RED))
        texture = result.root.mesh_nodes()[0].mesh.material.texture
        self.assertEqual((texture.width, texture.height), (4, 2))
        self.assertEqual(texture.pixels[:4], bytes(RED))
        self.assertIs(texture.source.kind, TextureSourceKind.BUFFER_VIEW)
        self.assertEqual(len(result.textures), 1)
        self.assertEqual(result.warnings, [])

    def test_blob_texture(self):
        result = self._textured("blob", png_bytes(2, 2, RED))
        texture = result.root.mesh_nodes()[0].mesh.material.texture
        self.assertIsNotNone(texture)
        self.assertIs(texture.source.kind, TextureSourceKind.BLOB)
        self.assertEqual(texture.source.ref, "42")

    def test_dangling_blob_texture_is_non_fatal(self):
        result = self._textured("dangling")
        mesh_nodes = result.root.mesh_nodes()
        self.assertEqual(len(mesh_nodes), 1)
        self.assertIsNone(mesh_nodes[0].mesh.material.texture)
        self.assertEqual(len(result.warnings), 1)
        warning = result.warnings[0]
        self.assertIsInstance(warning, MissingBlobError)
        self.assertIsInstance(warning, NonFatalRenderError)
        self.assertEqual(warning.blob_id, "9999")

    def test_undecodable_texture_is_non_fatal(self):
        result = self._textured("view", b"definitely not a png")
        self.assertIsNone(result.root.mesh_nodes()[0].mesh.material.texture)
        self.assertIsInstance(result.warnings[0], TextureDecodeError)

    def test_missing_external_texture_is_non_fatal(self):
        result = self._textured("textures/missing.png")
        self.assertIsNone(result.root.mesh_nodes()[0].mesh.material.texture)
        self.assertIsInstance(result.warnings[0], TextureDecodeError)


if __name__ == "__main__":
    unittest.main()
