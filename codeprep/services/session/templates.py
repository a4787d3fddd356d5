from __future__ import annotations

from typing import Dict, Optional

from .schema import Question

FALLBACK_LANGUAGE = "cpp"

SCRATCH_TEMPLATES: Dict[str, str] = {
    "cpp": """#include <bits/stdc++.h>
using namespace std;

int main() {
    // Input arrives on stdin; print the answer to stdout.
    string line;
    getline(cin, line);

    // Your code here:


    cout << result;
    return 0;
}
""",
    "python": """import json
import sys

# Input arrives on stdin; print the answer to stdout.
data = sys.stdin.read().strip().split("\\n")

# Your code here:


print(json.dumps(result))
""",
    "javascript": """// Input arrives on stdin; print the answer to stdout.
const input = require('fs').readFileSync(0, 'utf-8').trim().split('\\n');

// Your code here:


console.log(JSON.stringify(result));
""",
    "java": """import java.io.*;
import java.util.*;

public class Main {
    public static void main(String[] args) throws Exception {
        BufferedReader br = new BufferedReader(new InputStreamReader(System.in));
        // Input arrives on stdin; print the answer to stdout.
        String line = br.readLine();

        // Your code here:


        System.out.println(result);
    }
}
""",
}


def template_for(language: Optional[str]) -> str:
    key = (language or "").strip().lower()
    return SCRATCH_TEMPLATES.get(key, SCRATCH_TEMPLATES[FALLBACK_LANGUAGE])


def starter_code(question: Optional[Question], language: str) -> str:
    """The question's own starter code for ``language`` if it has any, else a scratch template."""

    key = (language or "").strip().lower()
    if question is not None:
        starter = question.starter_code.get(key)
        if starter and starter.strip():
            return starter
    return template_for(key)
