from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


WPML_12 = """\
<?xml version="1.0" encoding="utf-8" standalone="no"?>
<xliff xmlns="urn:oasis:names:tc:xliff:document:1.2" version="1.2">
  <file original="post-42" source-language="es" target-language="en" datatype="plaintext">
    <header>
      <reference>
        <external-file href="https://example.com/?p=42"/>
      </reference>
    </header>
    <body>
      <trans-unit resname="title" restype="string" datatype="html" id="title">
        <source><![CDATA[Hola]]></source>
        <target><![CDATA[Hola]]></target>
      </trans-unit>
      <trans-unit resname="body" restype="string" datatype="html" id="body">
        <source><![CDATA[Este es un contenido largo.]]></source>
      </trans-unit>
      <trans-unit resname="field-_yoast_wpseo_metadesc-0" restype="string" datatype="html" id="field-_yoast_wpseo_metadesc-0">
        <source><![CDATA[desc]]></source>
        <target/>
      </trans-unit>
    </body>
  </file>
</xliff>
"""

MARKUP_12 = """\
<?xml version="1.0" encoding="utf-8"?>
<xliff version="1.2">
  <file original="page-7" source-language="es" target-language="fr">
    <body>
      <group id="hero">
        <trans-unit id="content" resname="post_content">
          <source><![CDATA[<p>Compra <strong>ahora</strong> y ahorra %s.</p>[gallery ids="1,2"] fin]]></source>
          <note>Shortcodes stay as they are</note>
        </trans-unit>
      </group>
      <trans-unit id="skip" resname="sku" translate="no">
        <source>AB-100</source>
      </trans-unit>
      <trans-unit id="empty" resname="excerpt">
        <source><![CDATA[   ]]></source>
      </trans-unit>
    </body>
  </file>
</xliff>
"""

SEGMENTED_20 = """\
<?xml version="1.0" encoding="UTF-8"?>
<xliff xmlns="urn:oasis:names:tc:xliff:document:2.0" version="2.0" srcLang="es" trgLang="de">
  <file id="f1" original="page-7">
    <unit id="u1" name="post_title">
      <segment>
        <source>Bienvenidos</source>
      </segment>
    </unit>
    <unit id="u2" name="post_content">
      <notes>
        <note>Keep the brand name</note>
      </notes>
      <segment id="s1">
        <source>Compra <pc id="1">ahora</pc> &amp; ahorra <ph id="2"/>.</source>
        <target xml:lang="de">Alt</target>
      </segment>
      <segment id="s2">
        <source>Segunda frase.</source>
      </segment>
    </unit>
  </file>
</xliff>
"""


@pytest.fixture
def wpml_xliff() -> str:
    return WPML_12


@pytest.fixture
def markup_xliff() -> str:
    return MARKUP_12


@pytest.fixture
def xliff20() -> str:
    return SEGMENTED_20
