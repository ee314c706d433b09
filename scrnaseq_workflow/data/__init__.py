# scrnaseq_workflow/data/__init__.py
