# scrnaseq_workflow/analysis/__init__.py
